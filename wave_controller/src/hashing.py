from __future__ import annotations

import json
from collections.abc import Iterable
from hashlib import sha256
from typing import Any

from wave_controller.src.children import CONFIG_MAP, ConfigSource


def _content(child: ConfigSource) -> dict[str, Any]:
    if child.kind == CONFIG_MAP:
        return {"data": child.data, "binaryData": child.binary_data}
    return {"data": child.data}


def calculate_config_hash(children: Iterable[ConfigSource]) -> str:
    """Return a SHA-256 hex digest over the content of every resolved child.

    Children are sorted by ``(kind, name)`` and each mapping is serialised
    with sorted keys, so neither discovery order nor dict iteration order
    can change the digest.  Only ``data`` (and ``binaryData`` for
    ConfigMaps) is hashed: label, annotation and owner-reference edits bump
    ``resourceVersion`` but must not restart pods.

    References that could not be resolved are simply not passed in; a
    missing child contributes nothing, so the digest equals the one
    computed without that reference and differs from the all-present one.
    """
    entries = [
        [child.kind, child.name, _content(child)]
        for child in sorted(children, key=lambda c: c.id)
    ]
    stable_payload = json.dumps(entries, sort_keys=True, separators=(",", ":"))
    return sha256(stable_payload.encode("utf-8")).hexdigest()
