"""Per-path compression hints loaded from a hints file."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterator, Optional

log = logging.getLogger(__name__)


class CompressHintsError(ValueError):
    """A hints file or pattern is invalid."""


@dataclass(frozen=True)
class CompressHint:
    """Files matching `regex` use this pcluster size and algorithm config."""

    regex: re.Pattern
    physical_clusterblks: int
    algorithmtype: int


class CompressHints:
    """Ordered list of hints; the first matching pattern wins."""

    def __init__(self) -> None:
        self._hints: list[CompressHint] = []
        self.max_pclustersize = 0

    def __len__(self) -> int:
        return len(self._hints)

    def __iter__(self) -> Iterator[CompressHint]:
        return iter(self._hints)

    def insert(self, pattern, blks, algorithmtype=0) -> CompressHint:
        """Add a hint; raises CompressHintsError on a bad pattern."""
        try:
            regex = re.compile(pattern)
        except re.error as exc:
            raise CompressHintsError(f"invalid regex {pattern} ({exc})") from exc
        hint = CompressHint(regex, blks, algorithmtype)
        self._hints.append(hint)
        log.info("compress hint %s (%u) is inserted", pattern, blks)
        return hint

    def match(self, path, default_pclusterblks) -> tuple[int, int]:
        """Return (pclusterblks, algorithmtype) for `path`; 0 blocks means raw."""
        for hint in self._hints:
            if hint.regex.search(path):
                return hint.physical_clusterblks, hint.algorithmtype
        return default_pclusterblks, 0

    def clear(self) -> None:
        self._hints.clear()
        self.max_pclustersize = 0


def _atoi(text: Optional[str]) -> int:
    if text is None:
        return 0
    m = re.match(r"[ \t\n\r\f\v]*([+-]?\d+)", text)
    return int(m.group(1)) if m else 0


def _token(text: str, delims: str) -> tuple[Optional[str], str]:
    i = 0
    while i < len(text) and text[i] in delims:
        i += 1
    if i == len(text):
        return None, ""
    j = i
    while j < len(text) and text[j] not in delims:
        j += 1
    return text[i:j], text[j + 1:]


def load_compress_hints(path, block_size, pclustersize_def, available_cfgs):
    """Parse a hints file of `pclustersize [cfg] pattern` lines."""
    hints = CompressHints()
    with open(path, encoding="utf-8", errors="surrogateescape") as f:
        for lineno, text in enumerate(f, 1):
            if text.startswith("#") or text == "\n":
                continue
            size_tok, rest = _token(text, "\t ")
            pclustersize = _atoi(size_tok)
            alg, rest = _token(rest, "\n\t ")
            pattern, _ = _token(rest, "\n")
            if pattern is None:
                pattern, alg = alg, None
            if not pattern:
                raise CompressHintsError(
                    f"cannot find a match pattern at line {lineno}")
            if not alg:
                ccfg = 0
            else:
                ccfg = _atoi(alg)
                if ccfg < 0 or ccfg >= available_cfgs:
                    raise CompressHintsError(
                        f'invalid compressing configuration "{alg}" at line {lineno}')
            if pclustersize < 0 or pclustersize % block_size:
                log.warning("invalid physical clustersize %d, use default "
                            "pclusterblks %u", pclustersize, pclustersize_def)
                continue
            try:
                hints.insert(pattern, pclustersize // block_size, ccfg)
            except CompressHintsError as exc:
                log.error("%s", exc)
            if pclustersize > hints.max_pclustersize:
                hints.max_pclustersize = pclustersize
    return hints