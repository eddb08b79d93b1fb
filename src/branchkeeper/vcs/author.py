from __future__ import annotations

from dataclasses import dataclass
from email.utils import parseaddr
from typing import Optional


@dataclass(frozen=True)
class GitAuthor:
    name: Optional[str]
    address: str


def parse_git_author(value: str) -> Optional[GitAuthor]:
    """Parse ``"Name <email>"`` or a bare email address.

    Returns None when no usable email address can be found.
    """
    if not value or not value.strip():
        return None
    text = value.strip()
    # Quoted names with commas or dots are common in CI configs
    name, address = parseaddr(text)
    if not address or "@" not in address:
        if "<" in text and text.endswith(">"):
            name, _, rest = text.rpartition("<")
            address = rest[:-1].strip()
            name = name.strip().strip('"')
        if not address or "@" not in address:
            return None
    if " " in address:
        return None
    return GitAuthor(name=name or None, address=address)
