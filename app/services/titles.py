"""Human-readable vulnerability titles built from scanner rule ids and messages.

Titles are 3-12 words, at most 120 characters, carry no file paths or line
numbers, and never just repeat the rule id.
"""

import re

MAX_TITLE_LENGTH = 120
MAX_TITLE_WORDS = 12
MIN_TITLE_WORDS = 3
MIN_TITLE_CHARS = 5

# Rule-id segments that carry no meaning for a reader.
_NOISE_SEGMENTS = frozenset({"security", "audit", "lang", "check", "rules"})

_ADVISORY_ID = re.compile(r"^(CVE|CWE|GHSA)-", re.IGNORECASE)
_BOILERPLATE_PREFIX = re.compile(
    r"^(Found|Detected|Scanner found|Issue|Vulnerability):\s*", re.IGNORECASE
)
_LEVEL_PREFIX = re.compile(r"^(Security|Warning|Error):\s*", re.IGNORECASE)
_FILE_REFERENCE = re.compile(
    r"\s+in\s+[\w/\\.]+\.(js|ts|py|go|java|rb|php|c|cpp|h)\b", re.IGNORECASE
)
_AT_LINE = re.compile(r"\s+at line \d+", re.IGNORECASE)
_LINE_COL = re.compile(r":\d+:\d+")
_REMEDIATION_TAIL = re.compile(
    r"\.\s+(Fix|Update|Change|Modify|Replace|Remove)\b.*", re.IGNORECASE | re.DOTALL
)


def humanize_segment(segment: str) -> str:
    """'taint-unsafe-echo-tag' -> 'Taint Unsafe Echo Tag'."""
    words = [w for w in re.split(r"[-_]", segment) if w]
    return " ".join(w[:1].upper() + w[1:].lower() for w in words)


def _truncate(title: str) -> str:
    words = title.split()
    if len(words) > MAX_TITLE_WORDS:
        title = " ".join(words[:MAX_TITLE_WORDS])
    if len(title) > MAX_TITLE_LENGTH:
        title = title[: MAX_TITLE_LENGTH - 3] + "..."
    return title


def title_from_rule_id(rule_id: str) -> str:
    """
    Derive a title from a machine rule id.

    Advisory ids (CVE/CWE/GHSA) are kept verbatim in upper case. Dotted ids
    (semgrep) keep their last two meaningful segments.
    """
    rule_id = (rule_id or "").strip()
    if not rule_id:
        return "Unknown Vulnerability"
    if _ADVISORY_ID.match(rule_id):
        return rule_id.upper()
    if "." in rule_id:
        parts = [p for p in rule_id.split(".")[-3:] if p.lower() not in _NOISE_SEGMENTS]
        title = " ".join(humanize_segment(p) for p in parts[-2:])
    else:
        title = humanize_segment(rule_id)
    return _truncate(title) or rule_id


def _strip_repeated_half(text: str) -> str:
    """'Foo Bar Foo Bar' -> 'Foo Bar' (scanners sometimes echo the message)."""
    words = text.split()
    if len(words) > 2 and len(words) % 2 == 0:
        half = len(words) // 2
        if " ".join(words[:half]).lower() == " ".join(words[half:]).lower():
            return " ".join(words[:half])
    return text


def normalize_title(rule_id: str, raw_title: str | None) -> str:
    """Clean a scanner-provided title, falling back to the rule id when it is unusable."""
    if not raw_title or not raw_title.strip():
        return title_from_rule_id(rule_id)
    cleaned = raw_title.strip().splitlines()[0].strip()
    if cleaned.lower() == (rule_id or "").strip().lower():
        return title_from_rule_id(rule_id)

    cleaned = _BOILERPLATE_PREFIX.sub("", cleaned)
    cleaned = _LEVEL_PREFIX.sub("", cleaned)
    cleaned = _FILE_REFERENCE.sub("", cleaned)
    cleaned = _AT_LINE.sub("", cleaned)
    cleaned = _LINE_COL.sub("", cleaned)
    cleaned = _REMEDIATION_TAIL.sub("", cleaned)
    cleaned = _strip_repeated_half(cleaned).strip()

    words = cleaned.split()
    if len(words) < MIN_TITLE_WORDS:
        return title_from_rule_id(rule_id)
    if len(words) > MAX_TITLE_WORDS:
        cleaned = " ".join(words[:MAX_TITLE_WORDS]) + "..."
    if len(cleaned) > MAX_TITLE_LENGTH:
        cleaned = cleaned[: MAX_TITLE_LENGTH - 3] + "..."
    if len(cleaned) < MIN_TITLE_CHARS:
        return title_from_rule_id(rule_id)
    return cleaned[:1].upper() + cleaned[1:]


def dependency_title(package_name: str, advisory_id: str) -> str:
    """SCA/container title: 'lodash: CVE-2021-23337'."""
    return f"{package_name}: {advisory_id.upper()}"


def secret_title(secret_type: str) -> str:
    """'generic-api-key' -> 'Generic Api Key Exposed'."""
    humanized = humanize_segment(secret_type) or "Secret"
    if "exposed" in humanized.lower():
        return humanized
    return f"{humanized} Exposed"


def iac_title(check_name: str, resource: str | None = None) -> str:
    """Checkov title with the affected resource in parentheses."""
    humanized = check_name.strip() if " " in check_name.strip() else humanize_segment(check_name)
    humanized = _truncate(humanized) or check_name
    if resource:
        return f"{humanized} ({resource})"
    return humanized
