# dotalog/identity.py

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Tuple

from dotalog.database import Database
from dotalog.parser import ParseResult, validate_roster

logger = logging.getLogger(__name__)


class DuplicateMatchError(ValueError):
    def __init__(self, dota_match_id: int, existing_match_id: int):
        super().__init__(f"Match {dota_match_id} is already logged")
        self.dota_match_id = dota_match_id
        self.existing_match_id = existing_match_id


@dataclass
class CreatedMatch:
    match_id: int
    dota_match_id: Optional[int]
    player_ids: Dict[int, int] = field(default_factory=dict)
    new_players: int = 0
    replaced_match_id: Optional[int] = None


class PlayerIdentityMerger:
    """
    Turn a confirmed status paste into a stored match.

    Every roster name is resolved to a persistent player: an existing player
    whose known names contain it (case-insensitively) is reused and the exact
    spelling is added to its aliases; otherwise a new player is created.
    """

    def __init__(self, db: Database):
        self.db = db

    def resolve_player(self, name: str) -> Tuple[int, bool]:
        """
        Find or create the player for a display name.

        When several players share the alias, the most recently active one
        wins (see ``Database.find_players_by_name``).

        Returns:
            (player_id, created)
        """
        candidates = self.db.find_players_by_name(name)
        if not candidates:
            return self.db.create_player([name]), True

        player = candidates[0]
        if len(candidates) > 1:
            logger.info(
                "Name '%s' is shared by players %s; using most recent %s",
                name,
                [c["player_id"] for c in candidates],
                player["player_id"],
            )
        known_names = list(player["known_names"])
        if name not in known_names:
            known_names.append(name)
            self.db.update_player_known_names(player["player_id"], known_names)
        return player["player_id"], False

    def create_match(
        self,
        parsed: ParseResult,
        raw_status_text: str,
        our_team_slot: Optional[int] = None,
        created_by: Optional[str] = None,
        overwrite: bool = False,
        created_at: Optional[datetime] = None,
    ) -> CreatedMatch:
        """
        Store a match, its players and roster in a single transaction.

        Args:
            parsed: Output of ``parse_status``
            raw_status_text: The paste, kept verbatim on the match
            our_team_slot: 1 or 2 when the user picked their side
            created_by: Profile id of the uploader
            overwrite: Replace an already stored match with the same lobby id

        Raises:
            StatusParseError: Empty roster or repeated slots
            DuplicateMatchError: Lobby id already stored and ``overwrite`` is False
            ValueError: Invalid ``our_team_slot``
        """
        if our_team_slot not in (None, 1, 2):
            raise ValueError(f"our_team_slot must be 1, 2 or None, got {our_team_slot!r}")
        validate_roster(parsed.roster)

        dota_match_id = int(parsed.match_external_id) if parsed.match_external_id else None
        replaced_match_id = None

        with self.db.transaction():
            if dota_match_id is not None:
                existing = self.db.get_match_by_dota_id(dota_match_id)
                if existing:
                    if not overwrite:
                        raise DuplicateMatchError(dota_match_id, existing["match_id"])
                    replaced_match_id = existing["match_id"]
                    self.db.delete_match(replaced_match_id)

            match_id = self.db.create_match(
                dota_match_id=dota_match_id,
                raw_status_text=raw_status_text,
                our_team_slot=our_team_slot,
                created_by=created_by,
                created_at=created_at,
            )
            result = CreatedMatch(
                match_id=match_id,
                dota_match_id=dota_match_id,
                replaced_match_id=replaced_match_id,
            )

            for entry in parsed.roster:
                player_id, created = self.resolve_player(entry.name)
                if created:
                    result.new_players += 1
                self.db.add_match_player(
                    match_id=match_id,
                    player_id=player_id,
                    slot=entry.slot,
                    team=entry.team,
                    display_name=entry.name,
                )
                result.player_ids[entry.slot] = player_id

        logger.info(
            "Created match %s (lobby %s) with %s players, %s new",
            match_id,
            dota_match_id,
            len(result.player_ids),
            result.new_players,
        )
        return result
