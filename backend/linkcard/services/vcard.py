from __future__ import annotations

from typing import Optional

from backend.linkcard.models import ProfileRecord

VCARD_LINE_SEPARATOR = "\r\n"


def escape_text(value: Optional[str]) -> str:
    if not value:
        return ""
    return (
        value.replace("\\", "\\\\")
        .replace("\r\n", "\n")
        .replace("\n", "\\n")
        .replace(",", "\\,")
        .replace(";", "\\;")
    )


def build_vcard(profile: ProfileRecord, profile_url: str) -> str:
    # Field order is fixed; empty values stay as empty lines rather than being dropped.
    lines = [
        "BEGIN:VCARD",
        "VERSION:3.0",
        f"FN:{escape_text(profile.display_name)}",
        f"TITLE:{escape_text(profile.title)}",
        f"EMAIL:{escape_text(profile.email)}",
        f"TEL:{escape_text(profile.phone)}",
        f"ADR:;;{escape_text(profile.address)};;;;",
        f"URL:{profile_url}",
        f"NOTE:{escape_text(profile.bio)}",
        "END:VCARD",
    ]
    return VCARD_LINE_SEPARATOR.join(lines) + VCARD_LINE_SEPARATOR


def vcard_filename(username: str) -> str:
    return f"{username}.vcf"
