# dotalog/reconciler.py

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from dotalog.database import Database

logger = logging.getLogger(__name__)

# OpenDota player_slot: 0-4 radiant, 128-132 dire
DIRE_SLOT_BASE = 128


def od_slot_to_our_slot(player_slot: int) -> int:
    """Translate an OpenDota ``player_slot`` to our 1-10 slot numbering."""
    if player_slot <= 4:
        return player_slot + 1
    return player_slot - DIRE_SLOT_BASE + 6


def _safe_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class ExternalPlayerRecord:
    external_slot: int
    persona_name: Optional[str]
    hero_id: Optional[int]
    kills: Optional[int]
    deaths: Optional[int]
    assists: Optional[int]
    external_account_id: Optional[int]

    @classmethod
    def from_opendota(cls, player: Dict[str, Any]) -> "ExternalPlayerRecord":
        return cls(
            external_slot=_safe_int(player.get("player_slot"), -1),
            persona_name=player.get("personaname") or None,
            hero_id=_safe_int(player.get("hero_id")),
            kills=_safe_int(player.get("kills")),
            deaths=_safe_int(player.get("deaths")),
            assists=_safe_int(player.get("assists")),
            external_account_id=_safe_int(player.get("account_id")) or None,
        )


@dataclass(frozen=True)
class ReconcileResult:
    updated_count: int
    total_count: int


def records_from_match_data(match_data: Dict[str, Any]) -> List[ExternalPlayerRecord]:
    players = match_data.get("players") if isinstance(match_data, dict) else None
    return [ExternalPlayerRecord.from_opendota(p) for p in players or [] if isinstance(p, dict)]


def has_real_hero_data(match_data: Dict[str, Any]) -> bool:
    """
    Heuristic for "OpenDota has actually parsed this match".

    An unparsed match comes back with placeholder players whose hero ids are
    all zero (or no players at all). This is a signal, not a guarantee.
    """
    return any((record.hero_id or 0) > 0 for record in records_from_match_data(match_data))


class MatchDataReconciler:
    """Merge OpenDota per-player stats onto a match's roster rows."""

    def __init__(self, db: Database):
        self.db = db

    def reconcile(self, match_id: int, records: Iterable[ExternalPlayerRecord]) -> ReconcileResult:
        """
        Write hero/K/D/A from ``records`` onto the roster of ``match_id``.

        Pass 1 matches on persona name (case-insensitive), pass 2 falls back
        to seat position. A roster row is written at most once per call.
        Account ids are backfilled onto players that have none.

        Raises:
            ValueError: If the match has no roster rows
        """
        records = list(records)
        match_players = self.db.get_match_players(match_id)
        if not match_players:
            raise ValueError(f"No match players found for match {match_id}")

        by_name: Dict[str, Dict] = {}
        by_slot: Dict[int, Dict] = {}
        for mp in match_players:
            if mp.get("display_name"):
                by_name[mp["display_name"].lower()] = mp
            by_slot[mp["slot"]] = mp

        updated_ids = set()

        with self.db.transaction():
            for record in records:
                if not record.persona_name:
                    continue
                mp = by_name.get(record.persona_name.lower())
                if mp is None or mp["match_player_id"] in updated_ids:
                    continue
                self._apply(mp, record)
                updated_ids.add(mp["match_player_id"])

            for record in records:
                mp = by_slot.get(od_slot_to_our_slot(record.external_slot))
                if mp is None or mp["match_player_id"] in updated_ids:
                    continue
                self._apply(mp, record)
                updated_ids.add(mp["match_player_id"])

        logger.info("Match %s: updated %s/%s players from OpenDota", match_id, len(updated_ids), len(records))
        return ReconcileResult(updated_count=len(updated_ids), total_count=len(records))

    def _apply(self, mp: Dict, record: ExternalPlayerRecord) -> None:
        self.db.update_match_player_stats(
            mp["match_player_id"],
            hero_id=record.hero_id,
            kills=record.kills,
            deaths=record.deaths,
            assists=record.assists,
        )
        if record.external_account_id and mp.get("steam_account_id") is None:
            if self.db.set_player_steam_account_id_if_missing(mp["player_id"], record.external_account_id):
                mp["steam_account_id"] = record.external_account_id

    def save_match_data(self, match_id: int, match_data: Dict[str, Any]) -> ReconcileResult:
        """Store the raw OpenDota blob on the match and reconcile its players, atomically."""
        with self.db.transaction():
            self.db.set_match_opendota_data(match_id, match_data)
            return self.reconcile(match_id, records_from_match_data(match_data))
