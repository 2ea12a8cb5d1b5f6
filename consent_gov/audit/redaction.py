"""
Redaction of sensitive keys in audit metadata
"""

from typing import Any, Iterable, List, Optional, Tuple

from ..constants import DEFAULT_REDACTED_FIELDS, REDACTED_VALUE


class RedactionPolicy:
    """
    Ordered list of key matchers applied to audit metadata.

    A key is redacted when any matcher occurs in it as a case-insensitive
    substring. Nested dicts and lists are walked recursively; only values
    under matching keys are replaced.
    """

    def __init__(self, matchers: Optional[Iterable[str]] = None,
                 replacement: str = REDACTED_VALUE):
        source = DEFAULT_REDACTED_FIELDS if matchers is None else matchers
        self.matchers: Tuple[str, ...] = tuple(m.lower() for m in source if m)
        self.replacement = replacement

    def should_redact(self, key: Any) -> bool:
        if not isinstance(key, str):
            return False
        lowered = key.lower()
        return any(m in lowered for m in self.matchers)

    def redact(self, value: Any) -> Any:
        """Return a redacted copy; the input is never modified"""
        if isinstance(value, dict):
            return {
                k: self.replacement if self.should_redact(k) else self.redact(v)
                for k, v in value.items()
            }
        if isinstance(value, (list, tuple)):
            return [self.redact(v) for v in value]
        return value

    def with_matchers(self, extra: Iterable[str]) -> "RedactionPolicy":
        combined: List[str] = list(self.matchers)
        combined.extend(m for m in extra if m and m.lower() not in combined)
        return RedactionPolicy(combined, self.replacement)
