from __future__ import annotations

import re
from typing import Mapping, Sequence

from comicgen.graphs.contracts import StoryboardFrame

_TRAILING_SEPARATOR = re.compile(r"\s*[:：(（\-—/|,，].*$")


def _base_name(name: str) -> str:
    """Drop a trailing qualifier such as "Momo (narrating)" or "Momo: whispering"."""
    return _TRAILING_SEPARATOR.sub("", name).strip()


def lookup_reference(role: str, references: Mapping[str, str]) -> str | None:
    """Find a role's reference image with exact, case-insensitive, qualifier and substring matching."""
    if not role or not references:
        return None
    if references.get(role):
        return references[role]

    lowered = {key.strip().lower(): url for key, url in references.items() if url}
    role_key = role.strip().lower()
    if role_key in lowered:
        return lowered[role_key]

    base = _base_name(role).lower()
    if base and base in lowered:
        return lowered[base]
    for key, url in lowered.items():
        if _base_name(key).lower() == base and base:
            return url

    if base:
        for key, url in lowered.items():
            key_base = _base_name(key).lower()
            if key_base and (key_base in base or base in key_base):
                return url
    return None


def frame_reference_images(frame: StoryboardFrame, references: Mapping[str, str]) -> list[str]:
    urls: list[str] = []
    for item in frame.dialogues:
        url = lookup_reference(item.role, references)
        if url and url not in urls:
            urls.append(url)
    return urls


def select_reference_images(
    frame: StoryboardFrame,
    references: Mapping[str, str] | None,
    caller_reference: str | None,
    global_references: Sequence[str] | None,
    *,
    multi: bool,
    cap: int,
) -> list[str]:
    if cap <= 0:
        return []
    local = frame_reference_images(frame, references or {})
    globals_ = [url for url in (global_references or []) if url]

    if multi:
        if local:
            return local[:cap]
        if globals_:
            return list(dict.fromkeys(globals_))[:cap]
        return [caller_reference] if caller_reference else []

    if caller_reference:
        return [caller_reference]
    if local:
        return local[:1]
    return globals_[:1]
