"""Code-aware similarity and validation used to bias synthesis when answers contain code."""

import logging
import re

from council.models import clamp_unit

logger = logging.getLogger(__name__)

MAX_BLOCK_BYTES = 100 * 1024
MAX_TOTAL_BYTES = 1024 * 1024

_FENCED_RE = re.compile(r"```[^\n]*\n(.*?)```", re.DOTALL)
_KEYWORD_RE = re.compile(
    r"\b(function|def|class|const|let|var|import|export|async|await|"
    r"if|else|for|while|switch|case|try|catch|except|throw|raise|return)\b"
)
_SIGNATURE_RE = re.compile(
    r"\b(?:def|function|func|fn)\s+(\w+)\s*\(([^)]*)\)|\bclass\s+(\w+)"
)
_CONTROL_FLOW_RE = re.compile(
    r"\b(if|elif|else|for|while|switch|case|try|catch|except|finally|return|raise|throw|yield)\b"
)
_CODE_LINE_RE = re.compile(
    r"^\s*(?:(?:def|class|function|func|fn|import|return|const|let|var|elif|except|catch|finally)\b"
    r"|from\s+[\w.]+\s+import\b)"
    r"|[{};]\s*$"
    r"|\)\s*:\s*$",
    re.MULTILINE,
)
_IDENTIFIER_RE = re.compile(r"\b[A-Za-z_][A-Za-z0-9_]{2,}\b")
_ERROR_HANDLING_RE = re.compile(r"\b(try|catch|except|finally|raise|throw)\b")
_DOC_RE = re.compile(r'("""|\'\'\'|/\*\*|^\s*#|^\s*//)', re.MULTILINE)

_BRACKETS = {")": "(", "]": "[", "}": "{"}


def _jaccard(a: set[str], b: set[str]) -> float:
    if not a and not b:
        return 1.0
    union = a | b
    return len(a & b) / len(union) if union else 0.0


class CodeOracle:
    """Heuristic code detection, structural similarity and quality weighting.

    Similarity weights: 70% signatures, 20% control-flow structure, 10%
    identifier overlap. Validation weight lies in [0.1, 2.0]; 0.0 is reserved
    for empty, oversized or critically malformed input.
    """

    def extract_code(self, text: str) -> list[str]:
        """Fenced blocks, truncated to the per-block and aggregate size limits."""
        blocks = _FENCED_RE.findall(text) or ([text] if self.detect_code(text) else [])
        kept: list[str] = []
        total = 0
        for block in blocks:
            block = block[:MAX_BLOCK_BYTES]
            if total + len(block) > MAX_TOTAL_BYTES:
                logger.debug("Code aggregate limit reached, dropping remaining blocks")
                break
            kept.append(block)
            total += len(block)
        return kept

    def detect_code(self, text: str) -> bool:
        if not text or not text.strip():
            return False
        if self.has_fenced_code(text):
            return True
        sample = text[:MAX_BLOCK_BYTES]
        # Unfenced text counts only with two or more lines shaped like statements
        return len(_KEYWORD_RE.findall(sample)) >= 2 and len(_CODE_LINE_RE.findall(sample)) >= 2

    def has_fenced_code(self, text: str) -> bool:
        return bool(text) and "```" in text and _FENCED_RE.search(text) is not None

    def calculate_similarity(self, a: str, b: str) -> float:
        code_a = "\n".join(self.extract_code(a))
        code_b = "\n".join(self.extract_code(b))
        if not code_a or not code_b:
            return 0.0

        sigs_a = self._signatures(code_a)
        sigs_b = self._signatures(code_b)
        signature_sim = _jaccard(sigs_a, sigs_b) if sigs_a or sigs_b else 0.5

        flow_a = _CONTROL_FLOW_RE.findall(code_a)
        flow_b = _CONTROL_FLOW_RE.findall(code_b)
        flow_sim = _jaccard(set(flow_a), set(flow_b))
        if flow_a or flow_b:
            longer = max(len(flow_a), len(flow_b))
            flow_sim *= min(len(flow_a), len(flow_b)) / longer

        ident_sim = _jaccard(
            set(_IDENTIFIER_RE.findall(code_a)), set(_IDENTIFIER_RE.findall(code_b))
        )
        return clamp_unit(0.7 * signature_sim + 0.2 * flow_sim + 0.1 * ident_sim)

    def validate_code(self, text: str) -> float:
        blocks = self.extract_code(text)
        if not blocks:
            return 0.0
        code = "\n".join(blocks)
        if not code.strip():
            return 0.0

        weight = 1.0
        if not self._balanced(code):
            weight *= 0.3
        if _ERROR_HANDLING_RE.search(code):
            weight *= 1.2
        if _DOC_RE.search(code):
            weight *= 1.1
        return max(0.1, min(2.0, weight))

    @staticmethod
    def _signatures(code: str) -> set[str]:
        sigs = set()
        for name, params, class_name in _SIGNATURE_RE.findall(code):
            if class_name:
                sigs.add(f"class:{class_name}")
            else:
                arity = len([p for p in params.split(",") if p.strip()])
                sigs.add(f"{name}/{arity}")
        return sigs

    @staticmethod
    def _balanced(code: str) -> bool:
        stack: list[str] = []
        for ch in code:
            if ch in "([{":
                stack.append(ch)
            elif ch in _BRACKETS:
                if not stack or stack.pop() != _BRACKETS[ch]:
                    return False
        return not stack
