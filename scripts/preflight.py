from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
import sys
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from flowforge.core.config import get_settings
from flowforge.core.context import build_context
from flowforge.core.errors import EngineError
from flowforge.services.allocator import SlotAllocator


_VERSIONS_DIR = Path("flowforge/persistence/alembic/versions")


def _latest_revision() -> str | None:
    # Head revision read straight from the migration files.
    versions = sorted(_VERSIONS_DIR.glob("*.py"))
    if not versions:
        return None
    for line in versions[-1].read_text(encoding="utf-8").splitlines():
        if line.startswith("revision ="):
            return line.split("=", 1)[1].strip().strip('"')
    return None


async def _check_redis(redis_url: str) -> bool:
    client = Redis.from_url(redis_url, encoding="utf-8", decode_responses=True)
    try:
        return bool(await client.ping())
    except (OSError, RedisError):
        return False
    finally:
        await client.aclose()


async def run_preflight(*, output_json: str | None) -> int:
    settings = get_settings()
    ctx = build_context(settings)
    results: list[dict[str, Any]] = []
    try:
        try:
            async with ctx.session_factory() as db:
                db_rev = (
                    await db.execute(text("SELECT version_num FROM alembic_version LIMIT 1"))
                ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            db_rev = None
            results.append({"check": "database_reachable", "status": "fail", "detail": {"error": str(exc)}})
        head_rev = _latest_revision()
        results.append(
            {
                "check": "alembic_current_matches_head",
                "status": "pass" if db_rev == head_rev else "fail",
                "detail": {"db_revision": db_rev, "head_revision": head_rev},
            }
        )

        redis_ok = await _check_redis(settings.redis_url)
        results.append({"check": "redis_reachable", "status": "pass" if redis_ok else "fail", "detail": {}})

        if db_rev is not None:
            status = await SlotAllocator(ctx).pool_status()
            expected = settings.project_count * settings.slots_per_project
            results.append(
                {
                    "check": "slot_pool_bootstrapped",
                    "status": "pass" if status["total"] >= expected else "fail",
                    "detail": {"total": status["total"], "expected": expected},
                }
            )
            results.append(
                {
                    "check": "no_quarantined_slots",
                    "status": "pass" if not status["quarantined"] else "warn",
                    "detail": {"quarantined": status["quarantined"]},
                }
            )

        engine_status = "warn"
        engine_detail: dict[str, Any] = {"provider": settings.engine_provider}
        if ctx.engine_client is not None:
            try:
                await ctx.engine_client.list_workflows()
                engine_status = "pass"
            except EngineError as exc:
                engine_status = "fail"
                engine_detail["error"] = str(exc)
        results.append({"check": "engine_reachable", "status": engine_status, "detail": engine_detail})
    finally:
        await ctx.aclose()

    failed = [row for row in results if row["status"] == "fail"]
    summary = {"status": "pass" if not failed else "fail", "checks": results}
    if output_json:
        output_path = Path(output_json)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(json.dumps(summary, indent=2, sort_keys=True), encoding="utf-8")
    print(json.dumps(summary, indent=2, sort_keys=True))
    return 0 if not failed else 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Run deploy preflight checks.")
    parser.add_argument("--output-json", default="var/ops/preflight.json")
    args = parser.parse_args()
    return asyncio.run(run_preflight(output_json=args.output_json))


if __name__ == "__main__":
    sys.exit(main())
