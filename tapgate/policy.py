"""
tapgate/policy.py

Tag allow-list (the "which NFC tags may open a session" policy).

Sources, merged:
  - ALLOWED_TAGS env var (comma separated)
  - optional JSON file (ALLOWED_TAGS_PATH, default: known_tags.json alongside
    this file)

Open mode vs allowlist mode:
- If the merged allowlist is empty -> OPEN MODE (any well-formed tag may start)
- Otherwise -> ALLOWLIST MODE (only listed tags)

Supported JSON formats:

1) Simple allowlist:
   {
     "tags": ["tag-a", "tag-b"]
   }

2) Registry format (tag -> entry dict):
   {
     "tag-a": { "label": "first run stickers" },
     "tag-b": {}
   }

   In registry format the keys count as allowed tags.

The policy is loaded once per process and is read-only afterwards.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Optional, Set


log = logging.getLogger(__name__)

DEFAULT_TAGS_PATH = Path(__file__).resolve().parent / "known_tags.json"


def _load_tags_file_raw(path: Path) -> Dict[str, Any]:
    """
    Load the allow-list file as a dict.

    Returns {} if the file does not exist or is invalid JSON.
    """
    if not path.exists():
        return {}

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        log.warning("ignoring unreadable allow-list %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}


def load_tags_file(path: Path) -> Set[str]:
    """
    Read allowed tags from a JSON file (either supported format).

    Tags are compared exactly (case-sensitive); only surrounding whitespace
    is stripped.
    """
    data = _load_tags_file_raw(path)
    if not data:
        return set()

    # Format 1: {"tags": [...]}
    tags = data.get("tags")
    if isinstance(tags, list):
        return {t.strip() for t in tags if isinstance(t, str) and t.strip()}

    # Format 2: registry dict -> keys
    return {k.strip() for k in data.keys() if isinstance(k, str) and k.strip()}


def parse_tag_list(value: str) -> Set[str]:
    return {p.strip() for p in (value or "").split(",") if p.strip()}


class TagPolicy:
    """
    Immutable membership test over allowed tags.

    :param tags: Allowed tags. Empty means open mode.
    """

    def __init__(self, tags: Iterable[str] = ()):
        self._tags: FrozenSet[str] = frozenset(t.strip() for t in tags if t and t.strip())

    @classmethod
    def load(cls, env_list: str = "", path: Optional[Path] = None) -> "TagPolicy":
        tags = parse_tag_list(env_list)
        if path is not None:
            tags |= load_tags_file(path)
        policy = cls(tags)
        log.info("tag policy loaded: %s", "open mode" if policy.open_mode else f"{len(policy)} tags")
        return policy

    @property
    def open_mode(self) -> bool:
        return not self._tags

    def is_allowed(self, tag: str) -> bool:
        """
        Allowlist mode: only listed tags. Open mode: everything.

        Callers are expected to have validated tag syntax already.
        """
        if self.open_mode:
            return True
        return tag in self._tags

    def __contains__(self, tag: str) -> bool:
        return self.is_allowed(tag)

    def __len__(self) -> int:
        return len(self._tags)
