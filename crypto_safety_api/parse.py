"""
Pattern heuristics for pulling an address or ticker out of a chat message.
"""
import re
from typing import Optional

EVM_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")

STOPWORDS = {
    "what", "whats", "what's", "is", "the", "price", "of", "for", "a", "an",
    "token", "coin", "current", "now", "how", "much", "worth", "value",
    "please", "tell", "me",
}

_DOLLAR_SYMBOL_RE = re.compile(r"\$([a-z0-9]{2,15})\b", re.IGNORECASE)
_PRICE_OF_RE = re.compile(r"(?:price|value|worth)\s+(?:of|for)?\s*\$?([a-z0-9]{2,15})\b", re.IGNORECASE)
_WHAT_IS_PRICE_RE = re.compile(r"what(?:'s| is)?\s+the\s+price\s+of\s+\$?([a-z0-9]{2,15})\b", re.IGNORECASE)
_SYMBOL_RE = re.compile(r"^[a-z0-9]{2,15}$", re.IGNORECASE)


def is_evm_address(value: Optional[str]) -> bool:
    """True for 0x followed by exactly 40 hex digits."""
    return bool(value) and bool(EVM_ADDRESS_RE.match(value))


def is_symbol(value: Optional[str]) -> bool:
    """True for a 2-15 character alphanumeric ticker, optionally prefixed with $."""
    return bool(value) and bool(_SYMBOL_RE.match(value.strip().lstrip("$")))


def extract_symbolish(text: str) -> Optional[str]:
    """
    Guess a ticker from free text such as "$PEPE", "price of xrp" or "eth?".

    Returns:
        The upper-cased symbol, or None if nothing looks like one
    """
    raw = (text or "").strip()

    # 1) explicit $SYMBOL
    match = _DOLLAR_SYMBOL_RE.search(raw)
    if match:
        return match.group(1).upper()

    # 2) "price of xrp", "what is the price of pepe"
    lower = raw.lower()
    match = _PRICE_OF_RE.search(lower) or _WHAT_IS_PRICE_RE.search(lower)
    if match:
        return match.group(1).upper()

    # 3) single word like "xrp", "eth?"
    cleaned = re.sub(r"\s+", " ", re.sub(r"[?!.:,]", " ", lower)).strip()
    parts = [p for p in cleaned.split(" ") if p]
    if len(parts) == 1 and _SYMBOL_RE.match(parts[0]):
        return parts[0].upper()

    # 4) last non-stopword, if it looks like a symbol
    for word in reversed(parts):
        if word in STOPWORDS:
            continue
        if _SYMBOL_RE.match(word):
            return word.upper()
        break

    return None
