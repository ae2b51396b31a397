from __future__ import annotations

import hashlib
from colorsys import hsv_to_rgb
from pathlib import Path
from random import random

from rich.color import Color


def hash_data(data: bytes | str) -> str:
    return hashlib.sha1(data if isinstance(data, bytes) else data.encode()).hexdigest()


def hash_file(path: str | Path) -> str | None:
    p = Path(path)
    if not p.is_file():
        return None

    return hash_data(p.read_bytes())


def random_color() -> str:
    triplet = Color.from_rgb(*(x * 255 for x in hsv_to_rgb(random(), 1, 0.7))).triplet

    if triplet is None:  # pragma: unreachable
        raise Exception("Failed to generate random color; please try again.")

    return triplet.hex
