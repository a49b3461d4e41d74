"""Path and extension helpers shared by the config schema and the tracking store."""

from typing import List, Optional


def normalize_extension_filter(extensions: Optional[List[str]]) -> Optional[List[str]]:
    """Lower-case extensions and make sure each carries a leading dot.

    ``None`` means "no filter" and is passed through; blank entries are dropped.
    """
    if extensions is None:
        return None
    normalized = []
    for ext in extensions:
        ext = ext.strip().lower()
        if not ext:
            continue
        normalized.append(ext if ext.startswith(".") else f".{ext}")
    return normalized
