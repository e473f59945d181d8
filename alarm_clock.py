import logging
import signal
from datetime import datetime
from typing import Callable, List, Optional

from alarms.errors import AlarmError
from alarms.manager import AlarmManager
from alarms.parser import resolve_time
from alarms.storage import AlarmRecord, AlarmStore, JsonFileAlarmStore, MemoryAlarmStore, RedisAlarmStore
from config import Config, load_config, setup_logging
from time_utils import ensure_tz, format_tz_offset, now_in_tz, resolve_timezone

logger = logging.getLogger("alarm_clock")

CONSOLE_USER = "console"
CONSOLE_CONVERSATION = "console"


def graceful_exit(signum, frame) -> None:  # pragma: no cover - signal handler
    logger.info("Shutting down (signal %s)", signum)
    raise KeyboardInterrupt()


def build_store(config: Config) -> AlarmStore:
    if config.store_backend == "redis":
        return RedisAlarmStore.from_url(config.redis_url)
    if config.store_backend == "json":
        return JsonFileAlarmStore(config.alarms_path)
    return MemoryAlarmStore()


def log_delivery(record: AlarmRecord) -> None:
    logger.info(
        "Reminder for %s in %s (set by %s): %s",
        record.target_id,
        record.conversation_id,
        record.setter_id,
        record.content,
    )


class AlarmClockRuntime:
    def __init__(
        self,
        config: Config,
        store: Optional[AlarmStore] = None,
        deliver: Optional[Callable[[AlarmRecord], None]] = None,
    ):
        self.config = config
        self.tzinfo = resolve_timezone(config.timezone_name)
        self.store = store if store is not None else build_store(config)
        self.manager = AlarmManager(
            store=self.store,
            on_alarm_fired=deliver or log_delivery,
            timezone=self.tzinfo,
            key_prefix=config.key_prefix,
            grace_seconds=config.grace_seconds,
            scan_count=config.scan_count,
        )

    def start(self) -> None:
        logger.info("Alarm timezone: %s (%s)", self.config.timezone_name, format_tz_offset(self.tzinfo))
        self.manager.recover()

    def shutdown(self) -> None:
        self.manager.shutdown()

    def set_alarm(
        self,
        phrase: str,
        content: str,
        setter_id: str,
        conversation_id: str,
        target_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AlarmRecord:
        content = (content or "").strip()
        if not content:
            raise ValueError("Alarm content must not be empty")
        now = ensure_tz(now, self.tzinfo) if now else now_in_tz(self.tzinfo)
        scheduled_at = resolve_time(phrase, now, self.tzinfo)
        logger.info("Time phrase %r resolved to %s", phrase, scheduled_at.isoformat())
        record = self.manager.build_record(
            scheduled_at=scheduled_at,
            setter_id=setter_id,
            target_id=target_id or setter_id,
            conversation_id=conversation_id,
            content=content,
        )
        return self.manager.create(record)

    def list_alarms(self, conversation_id: Optional[str] = None) -> List[AlarmRecord]:
        return self.manager.list_alarms(conversation_id)

    def cancel_index(
        self, index: int, conversation_id: Optional[str], requester_id: str, privileged: bool = False
    ) -> AlarmRecord:
        return self.manager.cancel_by_index(index, conversation_id, requester_id, privileged=privileged)

    def handle_command(self, line: str) -> Optional[str]:
        command, _, rest = line.strip().partition(" ")
        command = command.lower()
        rest = rest.strip()
        try:
            if command == "set":
                phrase, _, content = rest.partition("|")
                record = self.set_alarm(phrase, content, CONSOLE_USER, CONSOLE_CONVERSATION)
                return f"Alarm set for {record.scheduled_at:%Y-%m-%d %H:%M}: {record.content}"
            if command in ("list", "all"):
                conversation = CONSOLE_CONVERSATION if command == "list" else None
                alarms = self.list_alarms(conversation)
                if not alarms:
                    return "No pending alarms."
                return "\n".join(
                    f"{idx}. [{a.scheduled_at.astimezone(self.tzinfo):%m-%d %H:%M}] {a.conversation_id}: {a.content}"
                    for idx, a in enumerate(alarms, start=1)
                )
            if command == "cancel":
                record = self.cancel_index(int(rest), CONSOLE_CONVERSATION, CONSOLE_USER)
                return f"Cancelled: {record.content}"
        except (AlarmError, ValueError) as exc:
            return f"Error: {exc}"
        return None


def main() -> None:
    config = load_config()
    setup_logging(config.log_level, config.log_dir)
    signal.signal(signal.SIGINT, graceful_exit)
    logger.info("Starting alarm clock (store=%s)", config.store_backend)

    runtime = AlarmClockRuntime(config)
    runtime.start()
    try:
        while True:
            try:
                line = input("> ")
            except EOFError:
                break
            if line.strip().lower() in ("quit", "exit"):
                break
            if not line.strip():
                continue
            reply = runtime.handle_command(line)
            print(reply or "Commands: set <phrase> | <content>, list, all, cancel <n>, quit")
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        runtime.shutdown()


if __name__ == "__main__":
    main()
