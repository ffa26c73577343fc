# tests/helpers.py

import os
import tempfile
from typing import Dict, List, Optional

from dotalog.database import Database
from dotalog.parser import parse_status


SAMPLE_STATUS = """\
[Client] hostname: Valve Dota 2 USEast Server (srcds8074-iad1.220.111)
[Client]   Lobby MatchID: 7654321
[Client] # userid name uniqueid connected ping loss state rate adr
[Client]  0 [A:1:123:456] BOT active 'SourceTV'
[Client]  1 [U:1:1001] 12:03 45 0 active 80000 'Neon'
[Client]  2 [U:1:1002] 12:03 51 0 active 80000 'Ghost'
[Client]  3 [U:1:1003] 12:02 38 0 active 80000 'Pudge Enjoyer'
[Client]  4 [U:1:1004] 12:02 60 0 active 80000 'Kappa'
[Client]  5 [U:1:1005] 12:01 44 0 active 80000 'mid or feed'
[Client]  6 [U:1:1006] 12:01 70 0 active 80000 'Rival One'
[Client]  7 [U:1:1007] 12:01 55 0 active 80000 'Rival Two'
[Client]  8 [U:1:1008] 12:00 41 0 active 80000 'Rival Three'
[Client]  9 [U:1:1009] 12:00 39 0 active 80000 'Rival Four'
[Client] 10 [U:1:1010] 11:59 48 0 active 80000 'Rival Five'
"""

SAMPLE_NAMES = [
    "Neon", "Ghost", "Pudge Enjoyer", "Kappa", "mid or feed",
    "Rival One", "Rival Two", "Rival Three", "Rival Four", "Rival Five",
]

OD_SLOTS = [0, 1, 2, 3, 4, 128, 129, 130, 131, 132]


def status_text(match_id: Optional[str], names: List[str]) -> str:
    """Build a status dump with one player line per name, slots from 1."""
    lines = ["[Client] # userid name uniqueid connected ping loss state rate adr"]
    if match_id:
        lines.insert(0, f"[Client]   Lobby MatchID: {match_id}")
    for slot, name in enumerate(names, 1):
        lines.append(f"[Client] {slot:>2} [U:1:{1000 + slot}] 12:00 40 0 active 80000 '{name}'")
    return "\n".join(lines) + "\n"


def opendota_match(
    match_id: int = 7654321,
    names: Optional[List[Optional[str]]] = None,
    hero_base: int = 10,
    account_base: Optional[int] = 5000,
) -> Dict:
    """OpenDota-shaped match blob; hero_base=0 gives the unparsed placeholder shape."""
    names = names if names is not None else SAMPLE_NAMES
    players = []
    for index, od_slot in enumerate(OD_SLOTS):
        players.append({
            "account_id": (account_base + index) if account_base is not None else None,
            "player_slot": od_slot,
            "hero_id": (hero_base + index) if hero_base else 0,
            "kills": index,
            "deaths": 10 - index,
            "assists": index * 2,
            "personaname": names[index] if index < len(names) else None,
        })
    return {"match_id": match_id, "duration": 1800, "radiant_win": True, "players": players}


def create_temp_db():
    """Return (Database, path) backed by a fresh temp file."""
    fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    return Database(db_path), db_path


def remove_temp_db(db: Database, db_path: str) -> None:
    db.close()
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(db_path + suffix):
            os.remove(db_path + suffix)


def sample_parse():
    return parse_status(SAMPLE_STATUS)
