from __future__ import annotations

import re

from datapilot.domain.state import SqlValidation


FORBIDDEN_KEYWORDS: tuple[str, ...] = (
    "DELETE",
    "UPDATE",
    "INSERT",
    "DROP",
    "ALTER",
    "CREATE",
    "TRUNCATE",
    "GRANT",
    "REVOKE",
    "EXEC",
    "EXECUTE",
)

# Whole-word matches only, so identifiers such as updated_at or created_by pass.
_KEYWORD_PATTERNS = [
    (keyword, re.compile(rf"\b{keyword}\b", re.IGNORECASE)) for keyword in FORBIDDEN_KEYWORDS
]
_READ_PREFIX_RE = re.compile(r"^(SELECT|WITH)\b", re.IGNORECASE)


def validate_sql(sql: str | None) -> SqlValidation:
    # Pure gate in front of every execution path: interactive asks and background steps alike.
    text = (sql or "").strip()
    if not text:
        return SqlValidation(valid=False, reason="no query generated")
    for keyword, pattern in _KEYWORD_PATTERNS:
        if pattern.search(text):
            return SqlValidation(valid=False, reason=f"forbidden keyword: {keyword}")
    semicolon = text.find(";")
    if semicolon != -1 and semicolon != len(text) - 1:
        return SqlValidation(valid=False, reason="multiple statements not allowed")
    if not _READ_PREFIX_RE.match(text):
        return SqlValidation(valid=False, reason="only read queries allowed")
    return SqlValidation(valid=True)
