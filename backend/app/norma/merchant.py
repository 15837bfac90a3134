import re

from backend.app.norma.patterns import normalize_description

_PAYMENT_PREFIXES = re.compile(
    r"^(?:CARD\s+PAYMENT\s+TO|DIRECT\s+DEBIT\s+TO|STANDING\s+ORDER\s+TO|"
    r"FASTER\s+PAYMENT\s+TO|BANK\s+TRANSFER\s+TO|PAYMENT\s+TO)\s+",
    re.IGNORECASE,
)
_DATE_TOKEN = re.compile(r"\d{1,2}[/\-.]\d{1,2}(?:[/\-.]\d{2,4})?")
_REFERENCE = re.compile(r"\bREF(?:[:\s]+|(?=\d))\w+", re.IGNORECASE)
_DOMAIN_SUFFIX = re.compile(r"\.(?:COM|CO\.UK)$", re.IGNORECASE)
_SEPARATORS = re.compile(r"[,*\-/\\|]")

# known subscription services, matched as substrings of the upper-cased description
SUBSCRIPTION_KEYWORDS = (
    "NETFLIX", "SPOTIFY", "DISNEY", "AMAZON PRIME", "APPLE", "YOUTUBE",
    "HBO", "HULU", "PLAYSTATION", "XBOX", "NINTENDO", "AUDIBLE",
    "DROPBOX", "GOOGLE", "MICROSOFT", "ADOBE", "PATREON",
)


def merchant_key(description: str) -> str:
    # same key the recurrence detector groups on
    return normalize_description(description)


def extract_merchant_name(description: str) -> str:
    s = (description or "").upper().strip()
    if not s:
        return ""
    s = _PAYMENT_PREFIXES.sub("", s)
    s = _DATE_TOKEN.sub("", s)
    s = _REFERENCE.sub("", s)
    s = re.sub(r"\s+", " ", s).strip()
    s = _DOMAIN_SUFFIX.sub("", s)

    # keep the first meaningful part before separators
    head = _SEPARATORS.split(s)[0].strip()
    if len(head) > 2:
        s = head

    return " ".join(word.capitalize() for word in s.split(" ") if word)


def has_subscription_keyword(description: str) -> bool:
    upper = (description or "").upper()
    return any(keyword in upper for keyword in SUBSCRIPTION_KEYWORDS)
