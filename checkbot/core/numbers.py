"""Parse an uploaded numbers.txt into a clean, deduplicated list."""
import re

from checkbot.core.errors import ValidationError

NUMBER_RE = re.compile(r"\+?[0-9]{10,15}")


def parse_numbers(text):
    """One candidate per line; bad lines dropped, duplicates removed keeping first occurrence."""
    seen = {}
    for line in text.splitlines():
        candidate = line.strip()
        if NUMBER_RE.fullmatch(candidate):
            seen.setdefault(candidate, None)
    return list(seen)


def numbers_from_upload(content: bytes, max_bytes=None):
    if max_bytes is not None and len(content) > max_bytes:
        raise ValidationError(f"File too large (limit {max_bytes // 1024} KB).")
    numbers = parse_numbers(content.decode("utf-8-sig", errors="replace"))
    if not numbers:
        raise ValidationError("No valid phone numbers found in the file.")
    return numbers
