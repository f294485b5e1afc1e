"""Entry point for the survey-mail package.

Usage::

    python -m survey_mail init-db                          # create tables
    python -m survey_mail poller                           # poll the inbox forever
    python -m survey_mail ingest                           # one ingestion pass
    python -m survey_mail aggregate <project_id>           # merge spreadsheets
    python -m survey_mail dispatch <project_id> [ids...]   # send the project email
    python -m survey_mail remind <project_id> [ids...]     # remind teachers yet to reply
"""

from __future__ import annotations

import asyncio
import sys

from .config import Settings
from .db import Database
from .errors import SurveyMailError
from .logging import setup_logging
from .service import SurveyMailService

MODES = ("init-db", "poller", "ingest", "aggregate", "dispatch", "remind")
USAGE = "Usage: python -m survey_mail <init-db|poller|ingest|aggregate|dispatch|remind> [args]"


async def _init_db(settings: Settings) -> None:
    db = Database(settings.database_url)
    try:
        await db.create_all()
    finally:
        await db.close()


async def _poller(settings: Settings) -> None:
    from .scheduler import IngestionScheduler

    db = Database(settings.database_url)
    try:
        scheduler = IngestionScheduler(SurveyMailService(settings, db), settings)
        await scheduler.run()
    finally:
        await db.close()


async def _one_shot(settings: Settings, mode: str, args: list[int]) -> None:
    db = Database(settings.database_url)
    try:
        async with SurveyMailService(settings, db) as service:
            if mode == "ingest":
                report = await service.ingest_replies()
                print(report.model_dump_json(indent=2))
            elif mode == "aggregate":
                result = await service.aggregate(args[0])
                print(f"{result.output_path} ({result.rows_written} rows)")
            else:
                send = service.dispatch if mode == "dispatch" else service.send_reminders
                queued = await send(args[0], args[1:] or None)
                if queued:
                    run = await service.last_run
                    print(run.model_dump_json(indent=2))
                else:
                    print("nothing to send")
    finally:
        await db.close()


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] not in MODES:
        print(USAGE, file=sys.stderr)
        sys.exit(1)

    mode = sys.argv[1]
    try:
        args = [int(a) for a in sys.argv[2:]]
    except ValueError:
        print(USAGE, file=sys.stderr)
        sys.exit(1)
    if mode in ("aggregate", "dispatch", "remind") and not args:
        print(f"Usage: python -m survey_mail {mode} <project_id> [ids...]", file=sys.stderr)
        sys.exit(1)

    settings = Settings()
    setup_logging(json=settings.log_json, level=settings.log_level)

    if mode == "init-db":
        asyncio.run(_init_db(settings))
    elif mode == "poller":
        asyncio.run(_poller(settings))
    else:
        try:
            asyncio.run(_one_shot(settings, mode, args))
        except SurveyMailError as exc:
            print(f"error: {exc}", file=sys.stderr)
            sys.exit(2)


if __name__ == "__main__":
    main()
