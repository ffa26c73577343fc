"""Request OpenDota replay parses for logged lobbies and harvest the results.

Meant to be run by a scheduler every ~10 minutes. Each run does two small
batches so a run stays well inside the OpenDota rate limit:

  harvest  - matches whose parse was requested a while ago: fetch the match,
             store + reconcile it if heroes are present, otherwise re-request
             (bounded by an attempt ceiling and a 48h window)
  request  - matches with a lobby id that never had a parse requested and
             are old enough for OpenDota to have ingested them

Run examples:
    python -m dotalog.tools.harvest_parses
    python -m dotalog.tools.harvest_parses --db data/dotalog.db --batch-size 3 --verbose
    python -m dotalog.tools.harvest_parses --loop-minutes 10
"""

from __future__ import annotations

import argparse
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from dotalog.config import DB_PATH_ENV, ConfigError, load_config
from dotalog.database import Database, utc_now
from dotalog.opendota import OpenDotaClient, OpenDotaError, RateLimiter
from dotalog.reconciler import MatchDataReconciler, has_real_hero_data

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5
HARVEST_COOLDOWN = timedelta(minutes=5)
REQUEST_DELAY = timedelta(minutes=45)
RECENCY_WINDOW = timedelta(hours=48)
MAX_PARSE_ATTEMPTS = 5


@dataclass
class JobReport:
    harvested: int = 0
    retried: int = 0
    requested: int = 0
    errors: int = 0

    def summary(self) -> str:
        return (
            f"harvested={self.harvested} retried={self.retried} "
            f"requested={self.requested} errors={self.errors}"
        )


class ParseHarvester:
    def __init__(
        self,
        db: Database,
        client: OpenDotaClient,
        reconciler: Optional[MatchDataReconciler] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        harvest_cooldown: timedelta = HARVEST_COOLDOWN,
        request_delay: timedelta = REQUEST_DELAY,
        recency_window: timedelta = RECENCY_WINDOW,
        max_attempts: int = MAX_PARSE_ATTEMPTS,
    ):
        self.db = db
        self.client = client
        self.reconciler = reconciler or MatchDataReconciler(db)
        self.batch_size = max(1, int(batch_size))
        self.harvest_cooldown = harvest_cooldown
        self.request_delay = request_delay
        self.recency_window = recency_window
        self.max_attempts = max_attempts

    def harvest_candidates(self, now: datetime) -> list:
        return self.db.get_harvest_candidates(
            requested_before=now - self.harvest_cooldown,
            created_after=now - self.recency_window,
            max_attempts=self.max_attempts,
            limit=self.batch_size,
        )

    def request_candidates(self, now: datetime) -> list:
        return self.db.get_parse_request_candidates(
            created_before=now - self.request_delay,
            created_after=now - self.recency_window,
            limit=self.batch_size,
        )

    def harvest_phase(self, now: datetime, report: JobReport) -> None:
        for row in self.harvest_candidates(now):
            match_id = row["match_id"]
            dota_match_id = row["dota_match_id"]
            try:
                match_data = self.client.fetch_match(dota_match_id)
                if has_real_hero_data(match_data):
                    result = self.reconciler.save_match_data(match_id, match_data)
                    report.harvested += 1
                    logger.info(
                        "Harvested lobby %s: %s/%s players updated",
                        dota_match_id,
                        result.updated_count,
                        result.total_count,
                    )
                    continue

                attempts = int(row.get("parse_attempts") or 0) + 1
                self.db.mark_parse_requested(match_id, now, attempts=attempts)
                self.client.request_parse(dota_match_id)
                report.retried += 1
                logger.info("Lobby %s not parsed yet; re-requested (attempt %s)", dota_match_id, attempts)
            except OpenDotaError as e:
                report.errors += 1
                logger.warning("Harvest of lobby %s failed: %s", dota_match_id, e)
            except Exception:
                report.errors += 1
                logger.exception("Harvest of lobby %s failed", dota_match_id)

    def request_phase(self, now: datetime, report: JobReport) -> None:
        for row in self.request_candidates(now):
            match_id = row["match_id"]
            dota_match_id = row["dota_match_id"]
            try:
                self.client.request_parse(dota_match_id)
                self.db.mark_parse_requested(match_id, now, attempts=1)
                report.requested += 1
                logger.info("Requested parse for lobby %s", dota_match_id)
            except OpenDotaError as e:
                report.errors += 1
                logger.warning("Parse request for lobby %s failed: %s", dota_match_id, e)
            except Exception:
                report.errors += 1
                logger.exception("Parse request for lobby %s failed", dota_match_id)

    def run_once(self, now: Optional[datetime] = None) -> JobReport:
        now = now or utc_now()
        report = JobReport()
        for name, phase in (("harvest", self.harvest_phase), ("request", self.request_phase)):
            try:
                phase(now, report)
            except Exception:
                report.errors += 1
                logger.exception("%s phase failed; continuing", name)
        logger.info("Harvest run complete: %s", report.summary())
        return report


def main() -> int:
    parser = argparse.ArgumentParser(description="Request and harvest OpenDota replay parses")
    parser.add_argument("--db", default="", help=f"SQLite DB path (defaults to {DB_PATH_ENV})")
    parser.add_argument("--batch-size", type=int, default=DEFAULT_BATCH_SIZE, help="Matches per phase per run")
    parser.add_argument("--loop-minutes", type=float, default=0, help="Repeat every N minutes instead of exiting")
    parser.add_argument("--dry-run", action="store_true", help="List candidates and exit")
    parser.add_argument("--verbose", action="store_true", help="Verbose logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    env = dict(os.environ)
    if args.db.strip():
        env[DB_PATH_ENV] = args.db.strip()
    try:
        config = load_config(env)
    except ConfigError as e:
        logger.error("%s", e)
        return 2

    db = Database(config.db_path)
    client = OpenDotaClient(
        base_url=config.opendota_base_url,
        api_key=config.opendota_api_key,
        rate_limiter=RateLimiter(config.opendota_min_interval),
    )
    harvester = ParseHarvester(db, client, batch_size=args.batch_size)
    logger.info("DB path: %s", db.db_path)

    try:
        if args.dry_run:
            now = utc_now()
            for row in harvester.harvest_candidates(now):
                print(f"harvest  lobby={row['dota_match_id']} attempts={row['parse_attempts']}")
            for row in harvester.request_candidates(now):
                print(f"request  lobby={row['dota_match_id']} created={row['created_at']}")
            return 0

        while True:
            # Per-match failures are logged and counted; they do not change the exit code
            harvester.run_once()
            if args.loop_minutes <= 0:
                return 0
            time.sleep(args.loop_minutes * 60)
    finally:
        db.close()


if __name__ == "__main__":
    raise SystemExit(main())
