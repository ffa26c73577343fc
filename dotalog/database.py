# dotalog/database.py

import functools
import json
import logging
import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_db_timestamp(value: datetime) -> str:
    """Format a datetime as the UTC text stored in every timestamp column."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def _name_key(value: Any) -> Optional[str]:
    return value.lower() if isinstance(value, str) else None


def _json_load(raw: Any, fallback: Any) -> Any:
    if raw is None or raw == "":
        return fallback
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return fallback


def _serialized(method):
    """Run a write method while holding the connection lock."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)

    return wrapper


class Database:
    """Handle all database operations."""

    def __init__(self, db_path: str = 'data/dotalog.db'):
        self.db_path = self._resolve_db_path(db_path)
        self.conn = None
        # Transaction depth is per thread; the lock spans a whole transaction
        self._lock = threading.RLock()
        self._local = threading.local()
        self.init_database()

    @staticmethod
    def _resolve_db_path(db_path: str) -> str:
        """Return an absolute database path anchored to project root when relative."""
        path = Path(db_path)
        if path.is_absolute():
            return str(path)

        project_root = Path(__file__).resolve().parents[1]
        return str(project_root / path)

    def init_database(self):
        """Create tables if they don't exist."""
        try:
            db_dir = os.path.dirname(self.db_path)
            if db_dir:
                try:
                    os.makedirs(db_dir, exist_ok=True)
                except OSError as e:
                    raise RuntimeError(f"Failed to create database directory '{db_dir}': {e}")

            # The web app shares one connection between the event loop and worker threads.
            self.conn = sqlite3.connect(self.db_path, timeout=30.0, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.conn.create_function("name_key", 1, _name_key, deterministic=True)
            self.conn.execute("PRAGMA busy_timeout = 30000")
            self.conn.execute("PRAGMA foreign_keys = ON")
            self._set_wal_mode_best_effort()

            cursor = self.conn.cursor()

            # App users; dota_names feed the "which slot is me" preview
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS profiles (
                    profile_id          TEXT PRIMARY KEY,
                    display_name        TEXT,
                    dota_names          TEXT NOT NULL DEFAULT '[]',
                    steam_account_id    INTEGER,
                    created_at          TEXT NOT NULL
                )
            """)

            # One row per human seen in a lobby, across name changes
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS players (
                    player_id               INTEGER PRIMARY KEY AUTOINCREMENT,
                    known_names             TEXT NOT NULL DEFAULT '[]',
                    steam_account_id        INTEGER,
                    top_heroes              TEXT NOT NULL DEFAULT '[]',
                    top_heroes_updated_at   TEXT,
                    profile_id              TEXT,
                    created_at              TEXT NOT NULL,
                    FOREIGN KEY (profile_id) REFERENCES profiles(profile_id) ON DELETE SET NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS matches (
                    match_id            INTEGER PRIMARY KEY AUTOINCREMENT,
                    dota_match_id       INTEGER UNIQUE,
                    raw_status_text     TEXT,
                    our_team_slot       INTEGER CHECK (our_team_slot IN (1, 2)),
                    opendota_fetched    INTEGER NOT NULL DEFAULT 0,
                    opendota_data       TEXT,
                    parse_requested_at  TEXT,
                    parse_attempts      INTEGER NOT NULL DEFAULT 0,
                    created_by          TEXT,
                    created_at          TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS match_players (
                    match_player_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    match_id        INTEGER NOT NULL,
                    player_id       INTEGER NOT NULL,
                    slot            INTEGER NOT NULL,
                    team            INTEGER NOT NULL CHECK (team IN (1, 2)),
                    display_name    TEXT,
                    hero_id         INTEGER,
                    kills           INTEGER,
                    deaths          INTEGER,
                    assists         INTEGER,
                    FOREIGN KEY (match_id) REFERENCES matches(match_id) ON DELETE CASCADE,
                    FOREIGN KEY (player_id) REFERENCES players(player_id) ON DELETE CASCADE,
                    UNIQUE(match_id, slot)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS tags (
                    tag_id      INTEGER PRIMARY KEY AUTOINCREMENT,
                    name        TEXT UNIQUE NOT NULL,
                    color       TEXT NOT NULL DEFAULT 'gray',
                    created_by  TEXT,
                    created_at  TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS player_tags (
                    player_id   INTEGER NOT NULL,
                    tag_id      INTEGER NOT NULL,
                    tagged_by   TEXT,
                    created_at  TEXT NOT NULL,
                    PRIMARY KEY (player_id, tag_id),
                    FOREIGN KEY (player_id) REFERENCES players(player_id) ON DELETE CASCADE,
                    FOREIGN KEY (tag_id) REFERENCES tags(tag_id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS notes (
                    note_id     INTEGER PRIMARY KEY AUTOINCREMENT,
                    player_id   INTEGER NOT NULL,
                    author_id   TEXT,
                    content     TEXT NOT NULL,
                    match_id    INTEGER,
                    created_at  TEXT NOT NULL,
                    updated_at  TEXT NOT NULL,
                    FOREIGN KEY (player_id) REFERENCES players(player_id) ON DELETE CASCADE,
                    FOREIGN KEY (match_id) REFERENCES matches(match_id) ON DELETE SET NULL
                )
            """)

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_match_players_player ON match_players(player_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_notes_player ON notes(player_id)")

            self._commit_with_retry(context="init schema commit")
            self._migrate_schema()
        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to initialize database at '{self.db_path}': {e}")

    def _migrate_schema(self) -> None:
        """
        Apply additive, idempotent schema migrations for older local databases.
        """
        try:
            self._add_column_if_missing("matches", "parse_requested_at TEXT", "parse_requested_at")
            self._add_column_if_missing(
                "matches", "parse_attempts INTEGER NOT NULL DEFAULT 0", "parse_attempts"
            )
            self._add_column_if_missing("players", "top_heroes_updated_at TEXT", "top_heroes_updated_at")
            self._commit_with_retry(context="migrate schema commit")
        except sqlite3.Error as e:
            self.conn.rollback()
            raise RuntimeError(f"Failed to migrate database schema: {e}")

    def _commit_with_retry(self, retries: int = 8, delay_seconds: float = 0.25, context: str = "commit") -> None:
        """
        Retry commit on transient SQLITE_BUSY/locked errors.
        """
        last_error = None
        for attempt in range(retries):
            try:
                self.conn.commit()
                return
            except sqlite3.OperationalError as e:
                last_error = e
                if "locked" not in str(e).lower() and "busy" not in str(e).lower():
                    raise
                if attempt == retries - 1:
                    break
                time.sleep(delay_seconds)
        raise RuntimeError(
            f"Failed to {context}: database remained locked after {retries} attempts ({last_error})"
        )

    def _set_wal_mode_best_effort(self, retries: int = 5, delay_seconds: float = 0.2) -> None:
        """Try to enable WAL without failing startup if the DB is temporarily locked."""
        for attempt in range(retries):
            try:
                self.conn.execute("PRAGMA journal_mode = WAL")
                return
            except sqlite3.OperationalError as e:
                msg = str(e).lower()
                if "locked" not in msg and "busy" not in msg:
                    raise
                if attempt == retries - 1:
                    logger.warning("Could not enable WAL mode (database locked); continuing. (%s)", e)
                    return
                time.sleep(delay_seconds)

    def _get_table_columns(self, table_name: str) -> set:
        cursor = self.conn.cursor()
        cursor.execute(f"PRAGMA table_info({table_name})")
        return {row["name"] for row in cursor.fetchall()}

    def _add_column_if_missing(self, table_name: str, column_sql: str, column_name: str) -> None:
        columns = self._get_table_columns(table_name)
        if column_name not in columns:
            cursor = self.conn.cursor()
            cursor.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_sql}")

    # --- Transactions ---

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Group several writes into one commit.

        Methods called inside the block skip their own commit; the block
        commits once on success and rolls everything back on any exception.
        Blocks may nest; only the outermost one commits.

        The connection lock is held for the whole block, so a write from
        another thread waits for the commit or rollback instead of joining it.
        """
        with self._lock:
            depth = self._tx_depth
            self._local.tx_depth = depth + 1
            try:
                yield self.conn
            except BaseException:
                self._local.tx_depth = depth
                if depth == 0:
                    self.conn.rollback()
                raise
            self._local.tx_depth = depth
            if depth == 0:
                self._commit_with_retry(context="transaction commit")

    @property
    def _tx_depth(self) -> int:
        return getattr(self._local, "tx_depth", 0)

    @property
    def in_transaction(self) -> bool:
        """True when the calling thread is inside ``transaction()``."""
        return self._tx_depth > 0

    def _commit(self, context: str = "commit") -> None:
        if not self.in_transaction:
            self._commit_with_retry(context=context)

    def _rollback(self) -> None:
        if not self.in_transaction:
            self.conn.rollback()

    # --- Row helpers ---

    @staticmethod
    def _player_from_row(row: sqlite3.Row) -> Dict[str, Any]:
        player = dict(row)
        player["known_names"] = _json_load(player.get("known_names"), [])
        player["top_heroes"] = _json_load(player.get("top_heroes"), [])
        return player

    @staticmethod
    def _match_from_row(row: sqlite3.Row) -> Dict[str, Any]:
        match = dict(row)
        match["opendota_fetched"] = bool(match.get("opendota_fetched"))
        match["opendota_data"] = _json_load(match.get("opendota_data"), None)
        return match

    # --- Profiles ---

    @_serialized
    def upsert_profile(
        self,
        profile_id: str,
        display_name: Optional[str] = None,
        dota_names: Optional[List[str]] = None,
        steam_account_id: Optional[int] = None,
    ) -> None:
        """Create or replace an app user's profile."""
        try:
            self.conn.execute(
                """
                INSERT INTO profiles (profile_id, display_name, dota_names, steam_account_id, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(profile_id) DO UPDATE SET
                    display_name = excluded.display_name,
                    dota_names = excluded.dota_names,
                    steam_account_id = excluded.steam_account_id
                """,
                (
                    profile_id,
                    display_name,
                    json.dumps(list(dota_names or [])),
                    steam_account_id,
                    to_db_timestamp(utc_now()),
                ),
            )
            self._commit(context="profile commit")
        except sqlite3.Error as e:
            self._rollback()
            raise RuntimeError(f"Failed to save profile '{profile_id}': {e}")

    def get_all_profiles(self) -> List[Dict]:
        """Get all profiles ordered by creation time."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM profiles ORDER BY created_at, profile_id")
        profiles = []
        for row in cursor.fetchall():
            profile = dict(row)
            profile["id"] = profile["profile_id"]
            profile["dota_names"] = _json_load(profile.get("dota_names"), [])
            profiles.append(profile)
        return profiles

    # --- Players ---

    @_serialized
    def create_player(self, known_names: List[str], steam_account_id: Optional[int] = None) -> int:
        """Insert a player and return player_id."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                INSERT INTO players (known_names, steam_account_id, top_heroes, created_at)
                VALUES (?, ?, '[]', ?)
                """,
                (json.dumps(list(known_names)), steam_account_id, to_db_timestamp(utc_now())),
            )
            self._commit(context="player commit")
            return cursor.lastrowid
        except sqlite3.Error as e:
            self._rollback()
            raise RuntimeError(f"Failed to create player {known_names!r}: {e}")

    def get_player(self, player_id: int) -> Optional[Dict]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM players WHERE player_id = ?", (player_id,))
        row = cursor.fetchone()
        return self._player_from_row(row) if row else None

    def get_all_players(self) -> List[Dict]:
        """Get all players, newest first, with their match counts."""
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT p.*, (SELECT COUNT(*) FROM match_players mp WHERE mp.player_id = p.player_id) AS match_count
            FROM players p
            ORDER BY p.created_at DESC, p.player_id DESC
        """)
        return [self._player_from_row(row) for row in cursor.fetchall()]

    def find_players_by_name(self, name: str) -> List[Dict]:
        """
        Players whose known names contain ``name``, compared case-insensitively.

        Ordered most recently active first: latest match appearance, then
        newest player record, then lowest id.
        """
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT p.*, (
                SELECT MAX(m.created_at)
                FROM match_players mp
                JOIN matches m ON m.match_id = mp.match_id
                WHERE mp.player_id = p.player_id
            ) AS last_seen_at
            FROM players p
            WHERE EXISTS (
                SELECT 1 FROM json_each(p.known_names) AS kn
                WHERE name_key(kn.value) = ?
            )
            ORDER BY (last_seen_at IS NULL), last_seen_at DESC, p.created_at DESC, p.player_id ASC
            """,
            (_name_key(name),),
        )
        return [self._player_from_row(row) for row in cursor.fetchall()]

    @_serialized
    def update_player_known_names(self, player_id: int, known_names: List[str]) -> None:
        try:
            self.conn.execute(
                "UPDATE players SET known_names = ? WHERE player_id = ?",
                (json.dumps(list(known_names)), player_id),
            )
            self._commit(context="known names commit")
        except sqlite3.Error as e:
            self._rollback()
            raise RuntimeError(f"Failed to update known names for player {player_id}: {e}")

    @_serialized
    def set_player_steam_account_id_if_missing(self, player_id: int, steam_account_id: int) -> bool:
        """Store an account id only when the player has none yet. Returns True if written."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "UPDATE players SET steam_account_id = ? WHERE player_id = ? AND steam_account_id IS NULL",
                (steam_account_id, player_id),
            )
            self._commit(context="steam account commit")
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            self._rollback()
            raise RuntimeError(f"Failed to backfill account id for player {player_id}: {e}")

    @_serialized
    def update_player_top_heroes(self, player_id: int, top_heroes: List[Dict], updated_at: datetime) -> None:
        try:
            self.conn.execute(
                "UPDATE players SET top_heroes = ?, top_heroes_updated_at = ? WHERE player_id = ?",
                (json.dumps(top_heroes), to_db_timestamp(updated_at), player_id),
            )
            self._commit(context="top heroes commit")
        except sqlite3.Error as e:
            self._rollback()
            raise RuntimeError(f"Failed to update top heroes for player {player_id}: {e}")

    @_serialized
    def delete_player(self, player_id: int) -> None:
        """Delete a player; roster rows, tags and notes cascade."""
        try:
            self.conn.execute("DELETE FROM players WHERE player_id = ?", (player_id,))
            self._commit(context="delete player commit")
        except sqlite3.Error as e:
            self._rollback()
            raise RuntimeError(f"Failed to delete player {player_id}: {e}")

    # --- Matches ---

    @_serialized
    def create_match(
        self,
        dota_match_id: Optional[int],
        raw_status_text: Optional[str],
        our_team_slot: Optional[int],
        created_by: Optional[str],
        created_at: Optional[datetime] = None,
    ) -> int:
        """Insert a match row and return match_id."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                INSERT INTO matches (dota_match_id, raw_status_text, our_team_slot, created_by, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    dota_match_id,
                    raw_status_text,
                    our_team_slot,
                    created_by,
                    to_db_timestamp(created_at or utc_now()),
                ),
            )
            self._commit(context="match commit")
            return cursor.lastrowid
        except sqlite3.Error as e:
            self._rollback()
            raise RuntimeError(f"Failed to create match {dota_match_id}: {e}")

    def get_match(self, match_id: int) -> Optional[Dict]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM matches WHERE match_id = ?", (match_id,))
        row = cursor.fetchone()
        return self._match_from_row(row) if row else None

    def get_match_by_dota_id(self, dota_match_id: int) -> Optional[Dict]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM matches WHERE dota_match_id = ?", (dota_match_id,))
        row = cursor.fetchone()
        return self._match_from_row(row) if row else None

    def get_all_matches(self, limit: Optional[int] = None) -> List[Dict]:
        """Get matches newest first, without the raw OpenDota blob."""
        query = """
            SELECT match_id, dota_match_id, our_team_slot, opendota_fetched,
                   parse_requested_at, parse_attempts, created_by, created_at
            FROM matches
            ORDER BY created_at DESC, match_id DESC
        """
        params: tuple = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        cursor = self.conn.cursor()
        cursor.execute(query, params)
        rows = []
        for row in cursor.fetchall():
            match = dict(row)
            match["opendota_fetched"] = bool(match["opendota_fetched"])
            rows.append(match)
        return rows

    @_serialized
    def delete_match(self, match_id: int) -> None:
        """Delete a match; its roster rows cascade."""
        try:
            self.conn.execute("DELETE FROM matches WHERE match_id = ?", (match_id,))
            self._commit(context="delete match commit")
        except sqlite3.Error as e:
            self._rollback()
            raise RuntimeError(f"Failed to delete match {match_id}: {e}")

    @_serialized
    def set_match_opendota_data(self, match_id: int, data: Dict[str, Any]) -> None:
        try:
            self.conn.execute(
                "UPDATE matches SET opendota_fetched = 1, opendota_data = ? WHERE match_id = ?",
                (json.dumps(data), match_id),
            )
            self._commit(context="opendota data commit")
        except sqlite3.Error as e:
            self._rollback()
            raise RuntimeError(f"Failed to store OpenDota data for match {match_id}: {e}")

    @_serialized
    def mark_parse_requested(self, match_id: int, requested_at: datetime, attempts: Optional[int] = None) -> None:
        """Stamp a parse request; bumps parse_attempts by one unless ``attempts`` is given."""
        try:
            if attempts is None:
                self.conn.execute(
                    """
                    UPDATE matches
                    SET parse_requested_at = ?, parse_attempts = COALESCE(parse_attempts, 0) + 1
                    WHERE match_id = ?
                    """,
                    (to_db_timestamp(requested_at), match_id),
                )
            else:
                self.conn.execute(
                    "UPDATE matches SET parse_requested_at = ?, parse_attempts = ? WHERE match_id = ?",
                    (to_db_timestamp(requested_at), attempts, match_id),
                )
            self._commit(context="parse request commit")
        except sqlite3.Error as e:
            self._rollback()
            raise RuntimeError(f"Failed to stamp parse request for match {match_id}: {e}")

    def get_harvest_candidates(
        self,
        requested_before: datetime,
        created_after: datetime,
        max_attempts: int,
        limit: int,
    ) -> List[Dict]:
        """Matches with a parse requested long enough ago and retries left."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT match_id, dota_match_id, parse_requested_at, parse_attempts, created_at
            FROM matches
            WHERE opendota_fetched = 0
              AND dota_match_id IS NOT NULL
              AND parse_requested_at IS NOT NULL
              AND parse_requested_at <= ?
              AND COALESCE(parse_attempts, 0) < ?
              AND created_at >= ?
            ORDER BY parse_requested_at ASC, match_id ASC
            LIMIT ?
            """,
            (to_db_timestamp(requested_before), max_attempts, to_db_timestamp(created_after), limit),
        )
        return [dict(row) for row in cursor.fetchall()]

    def get_parse_request_candidates(
        self,
        created_before: datetime,
        created_after: datetime,
        limit: int,
    ) -> List[Dict]:
        """Matches with a lobby id that never had a parse requested."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT match_id, dota_match_id, parse_requested_at, parse_attempts, created_at
            FROM matches
            WHERE opendota_fetched = 0
              AND dota_match_id IS NOT NULL
              AND parse_requested_at IS NULL
              AND created_at <= ?
              AND created_at >= ?
            ORDER BY created_at ASC, match_id ASC
            LIMIT ?
            """,
            (to_db_timestamp(created_before), to_db_timestamp(created_after), limit),
        )
        return [dict(row) for row in cursor.fetchall()]

    # --- Match players ---

    @_serialized
    def add_match_player(
        self,
        match_id: int,
        player_id: int,
        slot: int,
        team: int,
        display_name: Optional[str],
    ) -> int:
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                INSERT INTO match_players (match_id, player_id, slot, team, display_name)
                VALUES (?, ?, ?, ?, ?)
                """,
                (match_id, player_id, slot, team, display_name),
            )
            self._commit(context="match player commit")
            return cursor.lastrowid
        except sqlite3.Error as e:
            self._rollback()
            raise RuntimeError(f"Failed to add slot {slot} to match {match_id}: {e}")

    def get_match_players(self, match_id: int) -> List[Dict]:
        """Roster rows for a match ordered by slot, with the player's stored account id."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT mp.*, p.steam_account_id, p.known_names
            FROM match_players mp
            JOIN players p ON p.player_id = mp.player_id
            WHERE mp.match_id = ?
            ORDER BY mp.slot ASC
            """,
            (match_id,),
        )
        rows = []
        for row in cursor.fetchall():
            mp = dict(row)
            mp["known_names"] = _json_load(mp.get("known_names"), [])
            rows.append(mp)
        return rows

    def get_player_match_history(self, player_id: int) -> List[Dict]:
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT mp.*, m.dota_match_id, m.created_at AS match_created_at
            FROM match_players mp
            JOIN matches m ON m.match_id = mp.match_id
            WHERE mp.player_id = ?
            ORDER BY m.created_at DESC, m.match_id DESC
            """,
            (player_id,),
        )
        return [dict(row) for row in cursor.fetchall()]

    @_serialized
    def update_match_player_stats(
        self,
        match_player_id: int,
        hero_id: Optional[int],
        kills: Optional[int],
        deaths: Optional[int],
        assists: Optional[int],
    ) -> None:
        try:
            self.conn.execute(
                """
                UPDATE match_players
                SET hero_id = ?, kills = ?, deaths = ?, assists = ?
                WHERE match_player_id = ?
                """,
                (hero_id, kills, deaths, assists, match_player_id),
            )
            self._commit(context="match player stats commit")
        except sqlite3.Error as e:
            self._rollback()
            raise RuntimeError(f"Failed to update match player {match_player_id}: {e}")

    @_serialized
    def update_match_player_team(self, match_id: int, slot: int, team: int) -> bool:
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "UPDATE match_players SET team = ? WHERE match_id = ? AND slot = ?",
                (team, match_id, slot),
            )
            self._commit(context="team commit")
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            self._rollback()
            raise RuntimeError(f"Failed to move slot {slot} of match {match_id}: {e}")

    # --- Tags ---

    @_serialized
    def create_tag(self, name: str, color: str = "gray", created_by: Optional[str] = None) -> int:
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "INSERT INTO tags (name, color, created_by, created_at) VALUES (?, ?, ?, ?)",
                (name, color, created_by, to_db_timestamp(utc_now())),
            )
            self._commit(context="tag commit")
            return cursor.lastrowid
        except sqlite3.IntegrityError:
            self._rollback()
            raise ValueError(f"Tag '{name}' already exists")
        except sqlite3.Error as e:
            self._rollback()
            raise RuntimeError(f"Failed to create tag '{name}': {e}")

    def get_all_tags(self) -> List[Dict]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM tags ORDER BY name COLLATE NOCASE")
        return [dict(row) for row in cursor.fetchall()]

    @_serialized
    def delete_tag(self, tag_id: int) -> bool:
        """Delete a tag and its player assignments. Returns False if it did not exist."""
        try:
            cursor = self.conn.cursor()
            cursor.execute("DELETE FROM tags WHERE tag_id = ?", (tag_id,))
            self._commit(context="delete tag commit")
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            self._rollback()
            raise RuntimeError(f"Failed to delete tag {tag_id}: {e}")

    @_serialized
    def tag_player(self, player_id: int, tag_id: int, tagged_by: Optional[str] = None) -> None:
        try:
            self.conn.execute(
                """
                INSERT OR IGNORE INTO player_tags (player_id, tag_id, tagged_by, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (player_id, tag_id, tagged_by, to_db_timestamp(utc_now())),
            )
            self._commit(context="player tag commit")
        except sqlite3.Error as e:
            self._rollback()
            raise RuntimeError(f"Failed to tag player {player_id}: {e}")

    @_serialized
    def untag_player(self, player_id: int, tag_id: int) -> None:
        try:
            self.conn.execute("DELETE FROM player_tags WHERE player_id = ? AND tag_id = ?", (player_id, tag_id))
            self._commit(context="player untag commit")
        except sqlite3.Error as e:
            self._rollback()
            raise RuntimeError(f"Failed to untag player {player_id}: {e}")

    def get_player_tags(self, player_id: int) -> List[Dict]:
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT t.*, pt.tagged_by, pt.created_at AS tagged_at
            FROM player_tags pt
            JOIN tags t ON t.tag_id = pt.tag_id
            WHERE pt.player_id = ?
            ORDER BY t.name COLLATE NOCASE
            """,
            (player_id,),
        )
        return [dict(row) for row in cursor.fetchall()]

    # --- Notes ---

    @_serialized
    def add_note(
        self,
        player_id: int,
        content: str,
        author_id: Optional[str] = None,
        match_id: Optional[int] = None,
    ) -> int:
        now = to_db_timestamp(utc_now())
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                INSERT INTO notes (player_id, author_id, content, match_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (player_id, author_id, content, match_id, now, now),
            )
            self._commit(context="note commit")
            return cursor.lastrowid
        except sqlite3.Error as e:
            self._rollback()
            raise RuntimeError(f"Failed to add note for player {player_id}: {e}")

    @_serialized
    def update_note(self, note_id: int, content: str) -> bool:
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "UPDATE notes SET content = ?, updated_at = ? WHERE note_id = ?",
                (content, to_db_timestamp(utc_now()), note_id),
            )
            self._commit(context="note update commit")
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            self._rollback()
            raise RuntimeError(f"Failed to update note {note_id}: {e}")

    @_serialized
    def delete_note(self, note_id: int) -> None:
        try:
            self.conn.execute("DELETE FROM notes WHERE note_id = ?", (note_id,))
            self._commit(context="delete note commit")
        except sqlite3.Error as e:
            self._rollback()
            raise RuntimeError(f"Failed to delete note {note_id}: {e}")

    def get_player_notes(self, player_id: int) -> List[Dict]:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM notes WHERE player_id = ? ORDER BY created_at DESC, note_id DESC",
            (player_id,),
        )
        return [dict(row) for row in cursor.fetchall()]

    def close(self):
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
