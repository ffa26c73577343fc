from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
import asyncio
from typing import Any, Dict, Optional

from dotalog.config import load_config
from dotalog.database import Database
from dotalog.identity import DuplicateMatchError, PlayerIdentityMerger
from dotalog.opendota import OpenDotaClient, OpenDotaError, RateLimiter, hero_name
from dotalog.parse_flow import ParseCancelled, ParseOrchestrator, ParseState, ParseTimeoutError
from dotalog.parser import StatusParseError, build_name_index, identify_known_players, parse_status
from dotalog.players import PlayerService
from dotalog.reconciler import MatchDataReconciler

app = FastAPI(title="dotalog")

# Filled lazily from the environment, or by configure() in tests
services: Dict[str, Any] = {}


def configure(db: Database, client: OpenDotaClient, poll_interval_seconds: Optional[float] = None) -> None:
    services.clear()
    services["db"] = db
    services["client"] = client
    services["merger"] = PlayerIdentityMerger(db)
    services["reconciler"] = MatchDataReconciler(db)
    services["players"] = PlayerService(db, client)
    if poll_interval_seconds is not None:
        services["poll_interval_seconds"] = poll_interval_seconds


def _services() -> Dict[str, Any]:
    if not services:
        config = load_config()
        db = Database(config.db_path)
        client = OpenDotaClient(
            base_url=config.opendota_base_url,
            api_key=config.opendota_api_key,
            rate_limiter=RateLimiter(config.opendota_min_interval),
        )
        configure(db, client)
        print(f"[DB] Using database at: {db.db_path}")
    return services


async def _json_payload(request: Request) -> dict:
    try:
        payload = await request.json()
    except Exception:
        payload = {}
    return payload if isinstance(payload, dict) else {}


def _optional_int(value: Any, field: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"{field} must be an integer")


def _roster_payload(parsed) -> list:
    return [{"slot": e.slot, "name": e.name, "team": e.team} for e in parsed.roster]


# --- Status paste ---

@app.post("/api/status/preview")
async def status_preview(request: Request) -> dict:
    payload = await _json_payload(request)
    parsed = parse_status(str(payload.get("text") or ""))
    db = _services()["db"]
    identified = identify_known_players(parsed.roster, build_name_index(db.get_all_profiles()))
    return {
        "match_id": parsed.match_external_id,
        "players": _roster_payload(parsed),
        "app_users": {str(slot): profile_id for slot, profile_id in identified.items()},
    }


@app.post("/api/matches")
async def create_match(request: Request) -> dict:
    payload = await _json_payload(request)
    text = str(payload.get("text") or "")
    parsed = parse_status(text)
    try:
        created = _services()["merger"].create_match(
            parsed,
            raw_status_text=text,
            our_team_slot=_optional_int(payload.get("our_team_slot"), "our_team_slot"),
            created_by=payload.get("created_by"),
            overwrite=bool(payload.get("overwrite", False)),
        )
    except DuplicateMatchError as e:
        raise HTTPException(
            status_code=409,
            detail={"message": str(e), "existing_match_id": e.existing_match_id},
        )
    except (StatusParseError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "ok": True,
        "match_id": created.match_id,
        "dota_match_id": created.dota_match_id,
        "players": {str(slot): pid for slot, pid in created.player_ids.items()},
        "new_players": created.new_players,
        "replaced_match_id": created.replaced_match_id,
    }


# --- Matches ---

@app.get("/api/matches")
async def list_matches(limit: int = 100) -> dict:
    safe_limit = max(1, min(limit, 1000))
    rows = _services()["db"].get_all_matches(limit=safe_limit)
    return {"matches": rows, "count": len(rows)}


@app.get("/api/matches/{dota_match_id}")
async def match_detail(dota_match_id: int) -> dict:
    svc = _services()
    db = svc["db"]
    match = db.get_match_by_dota_id(dota_match_id)
    if not match:
        raise HTTPException(status_code=404, detail=f"Match {dota_match_id} not found")
    roster = db.get_match_players(match["match_id"])

    heroes: list = []
    if any(mp.get("hero_id") for mp in roster):
        try:
            heroes = await asyncio.to_thread(svc["client"].fetch_heroes)
        except OpenDotaError as e:
            # Names fall back to "Hero #<id>"
            print(f"[WEB] Hero list unavailable: {e}")

    for mp in roster:
        mp["hero_name"] = hero_name(heroes, mp["hero_id"]) if mp.get("hero_id") else None
        mp["tags"] = db.get_player_tags(mp["player_id"])
        mp["notes"] = db.get_player_notes(mp["player_id"])
    return {"match": match, "players": roster}


@app.delete("/api/matches/{match_id}")
async def delete_match(match_id: int) -> dict:
    db = _services()["db"]
    if not db.get_match(match_id):
        raise HTTPException(status_code=404, detail=f"Match {match_id} not found")
    db.delete_match(match_id)
    return {"ok": True}


@app.post("/api/matches/{match_id}/opendota")
async def fetch_opendota(match_id: int) -> dict:
    svc = _services()
    match = svc["db"].get_match(match_id)
    if not match:
        raise HTTPException(status_code=404, detail=f"Match {match_id} not found")
    if not match.get("dota_match_id"):
        raise HTTPException(status_code=400, detail="Match has no Dota match id")
    try:
        data = await asyncio.to_thread(svc["client"].fetch_match, match["dota_match_id"])
        result = svc["reconciler"].save_match_data(match_id, data)
    except OpenDotaError as e:
        raise HTTPException(status_code=502, detail=f"Failed to fetch OpenDota data: {e}")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, "updated_players": result.updated_count, "total_players": result.total_count}


@app.post("/api/matches/{match_id}/players/{slot}/team")
async def move_player(match_id: int, slot: int, request: Request) -> dict:
    payload = await _json_payload(request)
    team = _optional_int(payload.get("team"), "team")
    try:
        moved = _services()["players"].move_player_to_team(match_id, slot, team)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, "moved": moved}


# --- Players ---

@app.get("/api/players")
async def list_players(q: str = "") -> dict:
    svc = _services()
    rows = svc["players"].search_players(q) if q.strip() else svc["db"].get_all_players()
    return {"players": rows, "count": len(rows)}


@app.get("/api/players/{player_id}")
async def player_detail(player_id: int) -> dict:
    player = _services()["players"].get_player_detail(player_id)
    if not player:
        raise HTTPException(status_code=404, detail=f"Player {player_id} not found")
    return player


@app.post("/api/players/{player_id}/refresh-heroes")
async def refresh_heroes(player_id: int, turbo_only: bool = True) -> dict:
    try:
        top = await asyncio.to_thread(_services()["players"].refresh_top_heroes, player_id, turbo_only)
    except OpenDotaError as e:
        raise HTTPException(status_code=502, detail=f"Failed to fetch hero stats: {e}")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, "top_heroes": top}


@app.post("/api/players/{player_id}/tags")
async def add_player_tag(player_id: int, request: Request) -> dict:
    payload = await _json_payload(request)
    try:
        tag_id = _services()["players"].tag_player(
            player_id, str(payload.get("tag") or ""), tagged_by=payload.get("tagged_by")
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, "tag_id": tag_id}


@app.delete("/api/players/{player_id}/tags/{tag_id}")
async def remove_player_tag(player_id: int, tag_id: int) -> dict:
    _services()["db"].untag_player(player_id, tag_id)
    return {"ok": True}


@app.get("/api/tags")
async def list_tags() -> dict:
    rows = _services()["db"].get_all_tags()
    return {"tags": rows, "count": len(rows)}


@app.delete("/api/tags/{tag_id}")
async def delete_tag(tag_id: int) -> dict:
    if not _services()["db"].delete_tag(tag_id):
        raise HTTPException(status_code=404, detail=f"Tag {tag_id} not found")
    return {"ok": True}


@app.post("/api/players/{player_id}/notes")
async def add_note(player_id: int, request: Request) -> dict:
    payload = await _json_payload(request)
    try:
        note_id = _services()["players"].add_note(
            player_id,
            str(payload.get("content") or ""),
            author_id=payload.get("author_id"),
            match_id=_optional_int(payload.get("match_id"), "match_id"),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, "note_id": note_id}


@app.put("/api/notes/{note_id}")
async def update_note(note_id: int, request: Request) -> dict:
    payload = await _json_payload(request)
    content = str(payload.get("content") or "").strip()
    if not content:
        raise HTTPException(status_code=400, detail="content is required")
    if not _services()["db"].update_note(note_id, content):
        raise HTTPException(status_code=404, detail=f"Note {note_id} not found")
    return {"ok": True}


@app.delete("/api/notes/{note_id}")
async def delete_note(note_id: int) -> dict:
    _services()["db"].delete_note(note_id)
    return {"ok": True}


# --- Profiles / heroes ---

@app.post("/api/profiles")
async def upsert_profile(request: Request) -> dict:
    payload = await _json_payload(request)
    profile_id = str(payload.get("profile_id") or "").strip()
    if not profile_id:
        raise HTTPException(status_code=400, detail="profile_id is required")
    dota_names = payload.get("dota_names") or []
    if not isinstance(dota_names, list):
        raise HTTPException(status_code=400, detail="dota_names must be a list")
    _services()["db"].upsert_profile(
        profile_id,
        display_name=payload.get("display_name"),
        dota_names=[str(n).strip() for n in dota_names if str(n).strip()],
        steam_account_id=_optional_int(payload.get("steam_account_id"), "steam_account_id"),
    )
    return {"ok": True}


@app.get("/api/heroes")
async def heroes() -> dict:
    try:
        rows = await asyncio.to_thread(_services()["client"].fetch_heroes)
    except OpenDotaError as e:
        raise HTTPException(status_code=502, detail=f"Failed to fetch heroes: {e}")
    return {"heroes": rows, "count": len(rows)}


# --- Parse flow ---

@app.websocket("/ws/parse-match")
async def parse_match(websocket: WebSocket) -> None:
    await websocket.accept()
    stop_event = asyncio.Event()
    control_task = None

    try:
        data = await websocket.receive_json()
        match_id = int((data or {}).get("match_id"))
        svc = _services()

        async def _control_loop() -> None:
            try:
                while True:
                    try:
                        msg = await websocket.receive_json()
                    except (KeyError, TypeError, ValueError):
                        # Undecodable frame; keep listening for stop
                        continue
                    if not isinstance(msg, dict):
                        continue
                    action = str(msg.get("action") or "").strip().lower()
                    if action == "stop":
                        stop_event.set()
                        await websocket.send_json({"type": "stop_ack", "message": "Stopping parse."})
            except WebSocketDisconnect:
                stop_event.set()

        async def _on_state(state: ParseState) -> None:
            if state != ParseState.IDLE:
                await websocket.send_json({"type": "state", "state": state.value})

        kwargs = {}
        if "poll_interval_seconds" in svc:
            kwargs["poll_interval_seconds"] = svc["poll_interval_seconds"]
        orchestrator = ParseOrchestrator(
            svc["db"],
            svc["client"],
            reconciler=svc["reconciler"],
            on_state_change=_on_state,
            **kwargs,
        )

        control_task = asyncio.create_task(_control_loop())
        try:
            outcome = await orchestrator.run(match_id, stop_event=stop_event)
        except ParseCancelled:
            await websocket.send_json({"type": "cancelled", "message": "Parse cancelled."})
            return
        except (OpenDotaError, ParseTimeoutError, ValueError) as e:
            await websocket.send_json({"type": "error", "message": str(e)})
            return

        await websocket.send_json(
            {
                "type": "done",
                "updated_players": outcome.result.updated_count,
                "total_players": outcome.result.total_count,
                "poll_attempts": outcome.poll_attempts,
            }
        )
    except WebSocketDisconnect:
        stop_event.set()
        print("Client disconnected")
    except (TypeError, ValueError):
        await websocket.send_json({"type": "error", "message": "match_id is required"})
    finally:
        if control_task:
            control_task.cancel()


if __name__ == "__main__":
    import uvicorn

    _services()
    print("Starting dotalog web server...")
    print("Open http://localhost:5000 in your browser")
    uvicorn.run(app, host="127.0.0.1", port=5000)
