"""
Grid <-> channel payload codec.

Payloads are canonical JSON (sorted keys, no whitespace) so two reads of
the same state are byte-identical and can be diffed cheaply.
"""

import json
from typing import Dict, Optional

from models.channel import ChannelKind
from models.grid import SLOT_COUNT, Contribution, Grid, Slot, Take, parse_ref
from runtime.errors import PersistenceReadFailure


def canonical_json(value) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def encode_channels(grid: Grid) -> Dict[ChannelKind, str]:
    data = grid.to_dict()
    return {
        ChannelKind.GRID: canonical_json(data["videos"]),
        ChannelKind.TAKES: canonical_json(data["takes"]),
        ChannelKind.CONTRIBUTIONS: canonical_json(data["contributions"]),
    }


def decode_channels(generation_id: str, raw: Dict[ChannelKind, Optional[str]]) -> Grid:
    """
    Rebuild a Grid from raw channel payloads.

    A missing channel decodes to its empty value. Anything unparseable
    raises PersistenceReadFailure.
    """
    try:
        videos = json.loads(raw[ChannelKind.GRID]) if raw.get(ChannelKind.GRID) else None
        takes = json.loads(raw[ChannelKind.TAKES]) if raw.get(ChannelKind.TAKES) else None
        contribs = (
            json.loads(raw[ChannelKind.CONTRIBUTIONS])
            if raw.get(ChannelKind.CONTRIBUTIONS)
            else []
        )

        videos = videos or [None] * SLOT_COUNT
        takes = takes or [None] * SLOT_COUNT
        if not isinstance(videos, list) or len(videos) != SLOT_COUNT:
            raise ValueError("grid channel must be a 16-entry list")
        if not isinstance(takes, list) or len(takes) != SLOT_COUNT:
            raise ValueError("takes channel must be a 16-entry list")
        if not isinstance(contribs, list):
            raise ValueError("contributions channel must be a list")

        slots = [
            Slot(index=i, video=parse_ref(videos[i]), takes=Take.from_dict(takes[i]))
            for i in range(SLOT_COUNT)
        ]
        return Grid(
            generation_id=generation_id,
            slots=slots,
            contributions=[Contribution.from_dict(c) for c in contribs],
        )
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        raise PersistenceReadFailure(f"corrupt grid {generation_id}: {e}") from e
