from __future__ import annotations

import re
from typing import Iterable, Set

# 10.1000/xyz123, doi:10.1038/nphys1170
_DOI_RE = re.compile(r"\b(10\.\d{4,9}/[-._;()/:A-Za-z0-9]+)", re.IGNORECASE)

# Smith (2020), Smith et al. (2020), Smith and Jones (2020)
_AUTHOR_YEAR_RE = re.compile(
    r"\b([A-Z][A-Za-z'\-]+)(?:\s+(?:et\s+al\.?|and\s+[A-Z][A-Za-z'\-]+|&\s+[A-Z][A-Za-z'\-]+))?,?\s*\(((?:19|20)\d{2})[a-z]?\)"
)

# (Smith, 2020), (Smith et al., 2020; Jones 2019)
_PAREN_GROUP_RE = re.compile(r"\(([^()]+)\)")
_PAREN_ENTRY_RE = re.compile(
    r"^\s*([A-Z][A-Za-z'\-]+)(?:\s+et\s+al\.?)?,?\s+((?:19|20)\d{2})[a-z]?\s*$"
)

_WS_RE = re.compile(r"\s+")


def _normalize_doi(raw: str) -> str:
    return raw.strip().rstrip(".,;)").lower()


def normalize_text(value: str | None) -> str:
    """小写 + 去标点 + 压缩空白，用于机构名/参考文献等字符串比较。"""
    if not value:
        return ""
    cleaned = re.sub(r"[^\w\s]", " ", value.lower())
    return _WS_RE.sub(" ", cleaned).strip()


def extract_reference_keys(text: str | None) -> Set[str]:
    """
    从自由文本中抽取参考文献键。

    中文注释:
    - 支持 "Author (Year)"、"(Author, Year)" 与 DOI 三种形态。
    - 这是弱信号（容易误报），调用方只能把它作为有上限的软冲突。
    """
    if not text:
        return set()

    keys: Set[str] = set()
    for match in _DOI_RE.finditer(text):
        keys.add(f"doi:{_normalize_doi(match.group(1))}")

    for match in _AUTHOR_YEAR_RE.finditer(text):
        keys.add(f"{match.group(1).lower()}:{match.group(2)}")

    for group in _PAREN_GROUP_RE.finditer(text):
        for entry in group.group(1).split(";"):
            match = _PAREN_ENTRY_RE.match(entry)
            if match:
                keys.add(f"{match.group(1).lower()}:{match.group(2)}")
    return keys


def reference_keys(references: Iterable[str]) -> Set[str]:
    """
    把一组参考文献字符串规整为可比较的键集合。

    若某条字符串识别不出任何模式，则退化为整条字符串的规范化文本。
    """
    keys: Set[str] = set()
    for ref in references or []:
        found = extract_reference_keys(ref)
        if found:
            keys |= found
            continue
        normalized = normalize_text(ref)
        if normalized:
            keys.add(normalized)
    return keys
