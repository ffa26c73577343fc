# dotalog/parser.py

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional


MAX_SLOT = 10
TEAM_SIZE = 5


class StatusParseError(ValueError):
    """Raised when a parsed roster cannot be stored as a match."""


@dataclass(frozen=True)
class RosterEntry:
    slot: int
    name: str
    team: int


@dataclass(frozen=True)
class ParseResult:
    match_external_id: Optional[str] = None
    roster: List[RosterEntry] = field(default_factory=list)


def team_for_slot(slot: int) -> int:
    """Slots 1-5 play on team 1, slots 6-10 on team 2."""
    return 1 if slot <= TEAM_SIZE else 2


class StatusParser:
    """
    Parse the output of the in-game ``status`` console command.

    Only two kinds of line carry data:

    - the lobby line, e.g. ``[Client]   Lobby MatchID: 7654321``
    - player lines, e.g. ``[Client]  3 [U:1:123] 12:03 45 0 active 80000 'Neon'``

    Everything else, such as headers or a partial copy-paste, is skipped, so
    a malformed paste yields a partial or empty roster instead of an error.
    The parser keeps no state between calls and is safe to run on every
    keystroke.
    """

    MATCH_ID_RE = re.compile(r"Lobby\s*Match\s*ID:\s*(\d+)", re.IGNORECASE)
    PLAYER_RE = re.compile(r"^\[[^\]]+\]\s+(\d+)\s+[^']+\s*'(.+)'$")

    def parse(self, pasted_text: str) -> ParseResult:
        """
        Parse pasted status text into a match id and roster.

        Args:
            pasted_text: Raw console dump

        Returns:
            ParseResult; ``match_external_id`` is None when no lobby line
            was found. Duplicate slots are kept as-is, see ``validate_roster``.
        """
        if not pasted_text:
            return ParseResult()

        lines = pasted_text.replace("\r", "").split("\n")
        match_id: Optional[str] = None
        roster: List[RosterEntry] = []

        for raw_line in lines:
            line = raw_line.rstrip()

            match_id_match = self.MATCH_ID_RE.search(line)
            if match_id_match:
                if match_id is None:
                    match_id = match_id_match.group(1)
                continue

            player_match = self.PLAYER_RE.match(line)
            if not player_match:
                continue

            slot = int(player_match.group(1))
            # slot 0 is SourceTV / the broadcaster
            if slot < 1 or slot > MAX_SLOT:
                continue

            roster.append(RosterEntry(slot=slot, name=player_match.group(2), team=team_for_slot(slot)))

        return ParseResult(match_external_id=match_id, roster=roster)


_default_parser = StatusParser()


def parse_status(text: str) -> ParseResult:
    """Parse status text with a shared parser instance."""
    return _default_parser.parse(text)


def validate_roster(roster: Iterable[RosterEntry]) -> None:
    """
    Check a roster is storable as a single match.

    Raises:
        StatusParseError: If the roster is empty or repeats a slot
    """
    seen: Dict[int, str] = {}
    count = 0
    for entry in roster:
        count += 1
        if entry.slot in seen:
            raise StatusParseError(
                f"Slot {entry.slot} appears twice ('{seen[entry.slot]}' and '{entry.name}'); "
                "the paste looks corrupted"
            )
        seen[entry.slot] = entry.name
    if count == 0:
        raise StatusParseError("No players found in status text")


def build_name_index(profiles: Iterable[Mapping]) -> Dict[str, str]:
    """
    Build a lowercase-name -> profile id index from profile rows.

    Each profile carries ``id`` and ``dota_names``. When two profiles claim
    the same name the later one wins.
    """
    index: Dict[str, str] = {}
    for profile in profiles:
        for name in profile.get("dota_names") or []:
            if name:
                index[name.lower()] = str(profile["id"])
    return index


def identify_known_players(roster: Iterable[RosterEntry], name_index: Mapping[str, str]) -> Dict[int, str]:
    """Map roster slots to profile ids for names found in ``name_index``."""
    identified: Dict[int, str] = {}
    for entry in roster:
        profile_id = name_index.get(entry.name.lower())
        if profile_id is not None and entry.slot not in identified:
            identified[entry.slot] = profile_id
    return identified
