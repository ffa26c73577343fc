# dotalog/players.py

from typing import Dict, List, Optional

from dotalog.database import Database, utc_now
from dotalog.opendota import OpenDotaClient

TOP_HEROES_LIMIT = 10


class PlayerService:
    """Player lookups, hero stats and the small CRUD around players."""

    def __init__(self, db: Database, client: Optional[OpenDotaClient] = None):
        self.db = db
        self.client = client

    # --- Lookup ---

    def search_players(self, query: str) -> List[Dict]:
        """Players with any known name containing ``query`` (case-insensitive)."""
        needle = query.strip().lower()
        if not needle:
            return []
        return [
            player
            for player in self.db.get_all_players()
            if any(needle in name.lower() for name in player["known_names"])
        ]

    def get_player_detail(self, player_id: int) -> Optional[Dict]:
        """Player with tags, notes and match history."""
        player = self.db.get_player(player_id)
        if not player:
            return None
        player["tags"] = self.db.get_player_tags(player_id)
        player["notes"] = self.db.get_player_notes(player_id)
        player["match_history"] = self.db.get_player_match_history(player_id)
        return player

    # --- Hero stats ---

    def refresh_top_heroes(self, player_id: int, turbo_only: bool = True) -> List[Dict]:
        """Pull the player's most played heroes from OpenDota and store the top ones."""
        if self.client is None:
            raise RuntimeError("OpenDota client not configured")
        player = self.db.get_player(player_id)
        if not player:
            raise ValueError(f"Player {player_id} not found")
        if not player.get("steam_account_id"):
            raise ValueError(f"Player {player_id} has no Steam account id yet")

        raw = self.client.fetch_player_heroes(player["steam_account_id"], turbo_only=turbo_only)
        heroes = []
        for row in raw:
            try:
                heroes.append({
                    "hero_id": int(row.get("hero_id")),
                    "games": int(row.get("games") or 0),
                    "win": int(row.get("win") or 0),
                })
            except (TypeError, ValueError):
                continue
        heroes = [h for h in heroes if h["games"] > 0]
        heroes.sort(key=lambda h: (-h["games"], -h["win"], h["hero_id"]))
        top = heroes[:TOP_HEROES_LIMIT]

        self.db.update_player_top_heroes(player_id, top, utc_now())
        return top

    # --- Match roster edits ---

    def move_player_to_team(self, match_id: int, slot: int, team: int) -> bool:
        """Move a roster slot to another team. Returns False if it was already there."""
        if team not in (1, 2):
            raise ValueError(f"team must be 1 or 2, got {team!r}")
        roster = {mp["slot"]: mp for mp in self.db.get_match_players(match_id)}
        if slot not in roster:
            raise ValueError(f"Slot {slot} not found in match {match_id}")
        if roster[slot]["team"] == team:
            return False
        return self.db.update_match_player_team(match_id, slot, team)

    # --- Tags ---

    def tag_player(self, player_id: int, tag_name: str, tagged_by: Optional[str] = None) -> int:
        """Attach a tag by name, creating the tag on first use. Returns tag_id."""
        name = tag_name.strip()
        if not name:
            raise ValueError("Tag name cannot be empty")
        if not self.db.get_player(player_id):
            raise ValueError(f"Player {player_id} not found")
        existing = {t["name"].lower(): t for t in self.db.get_all_tags()}
        tag = existing.get(name.lower())
        tag_id = tag["tag_id"] if tag else self.db.create_tag(name, created_by=tagged_by)
        self.db.tag_player(player_id, tag_id, tagged_by=tagged_by)
        return tag_id

    # --- Notes ---

    def add_note(
        self,
        player_id: int,
        content: str,
        author_id: Optional[str] = None,
        match_id: Optional[int] = None,
    ) -> int:
        if not content.strip():
            raise ValueError("Note cannot be empty")
        if not self.db.get_player(player_id):
            raise ValueError(f"Player {player_id} not found")
        return self.db.add_note(player_id, content.strip(), author_id=author_id, match_id=match_id)
