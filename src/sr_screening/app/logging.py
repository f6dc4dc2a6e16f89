from __future__ import annotations

import json
import sys
import typing as t
import uuid
from datetime import timezone

import logfire
from loguru import logger

if t.TYPE_CHECKING:
    from loguru import Message
    from sqlalchemy.orm import sessionmaker
    from sqlmodel.orm.session import Session as SQLModelSession

    from sr_screening.app.config import Settings

from sr_screening.core.models import LogRecord
from sr_screening.core.types import LogLevel

LOGGING_FORMAT = "{time:!UTC} | {level: <8} | {name}:{function}:{line} | {message} | {extra} | t:{thread.name}:{thread.id}"


def _as_uuid(value: t.Any) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value)) if value else None
    except ValueError:
        return None


class PostgresLogSink:
    """Database sink for loguru that uses SQLModel.

    Records bound with ``session_id`` are linked to their screening run.
    """

    def __init__(  # pyright: ignore [reportMissingSuperCall] # there's no super ...
        self,
        session_factory: sessionmaker[SQLModelSession],
    ) -> None:
        """Initialize the sink with database configuration.

        Args:
            session_factory (sessionmaker[SQLModelSession]): SQLModel session factory.
        """
        self.session_factory = session_factory

    def __call__(self, message: Message) -> None:
        """Process and store a log record.

        Handler calling this should be configured with ``serialize=True``.
        """
        serialized = json.loads(message)["record"]
        record = LogRecord(
            timestamp=message.record["time"].astimezone(timezone.utc),
            level=LogLevel(message.record["level"].name),
            message=message.record["message"],
            module=message.record["module"],
            name=message.record["name"],  # pyright: ignore [reportCallIssue]
            function=message.record["function"],
            line=message.record["line"],
            extra=serialized.get("extra", {}),
            process=f"{message.record['process'].name}:{message.record['process'].id}",  # pyright: ignore [reportCallIssue]
            thread=f"{message.record['thread'].name}:{message.record['thread'].id}",  # pyright: ignore [reportCallIssue]
            session_id=_as_uuid(message.record["extra"].get("session_id")),
            exception=serialized.get("exception"),
        )

        with self.session_factory.begin() as session:
            session.add(record)


def configure_logging(settings: Settings | None = None) -> None:
    """Configure loguru handlers from settings.

    stderr always, a serialized JSON file when ``log_file`` is set, the database
    sink when ``log_to_db`` is set and Logfire when ``logfire_enabled`` is set.
    """
    db_settings = settings
    if settings is None:
        from sr_screening.app.config import get_settings

        settings = get_settings()

    level = settings.log_level.value
    handlers: list[dict[str, t.Any]] = [
        dict(  # noqa: C408
            sink=sys.stderr,
            level=level,
            format=LOGGING_FORMAT,
            enqueue=True,
            catch=True,
            colorize=True,
        ),
    ]
    if settings.log_file:
        handlers.append(
            dict(  # noqa: C408
                sink=settings.log_file,
                level=level,
                enqueue=True,
                catch=True,
                serialize=True,
            )
        )
    if settings.log_to_db:
        from sr_screening.app.database import session_factory_for

        handlers.append(
            dict(  # noqa: C408
                sink=PostgresLogSink(session_factory_for(db_settings)),
                level=level,
                enqueue=True,
                catch=True,
                serialize=True,
            )
        )
    if settings.logfire_enabled:
        logfire.configure(
            service_name="sr-screening",
            environment=settings.env,
            send_to_logfire="if-token-present",
        )
        logfire.instrument_pydantic()
        logfire.instrument_sqlalchemy()
        logfire.instrument_openai()
        handlers.append(dict(logfire.loguru_handler()))

    logger.remove()
    logger.configure(handlers=handlers)  # pyright: ignore [reportArgumentType]
    logger.info("Logging initialized.")
