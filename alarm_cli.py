import argparse
import logging
import signal
import sys
import time
from typing import List, Optional

from alarms.commands import CommandResult, CommandRouter, format_alarm_table
from alarms.manager import AlarmManager
from alarms.notify import Notification, Notifier
from alarms.sounds import LocalSpeaker, PlaybackSpawner, SoundLibrary
from alarms.storage import AlarmStore
from config import Config, load_config, setup_logging
from time_utils import format_tz_offset, now_in_tz, resolve_timezone

logger = logging.getLogger("alarms")


def graceful_exit(signum, frame) -> None:  # pragma: no cover - signal handler
    logger.info("Shutting down (signal %s)", signum)
    raise KeyboardInterrupt()


def build_manager(config: Config, notifier: Optional[Notifier] = None) -> AlarmManager:
    timezone = resolve_timezone(config.timezone)
    if notifier is None:
        notifier = Notifier(
            desktop=config.desktop_notifications,
            speaker=LocalSpeaker() if config.spoken_alerts else None,
        )
    return AlarmManager(
        store=AlarmStore(config.alarms_path, tzinfo=timezone),
        sounds=SoundLibrary(config.sounds_dir, config.fallback_sound_path),
        spawner=PlaybackSpawner(config.player),
        notifier=notifier,
        timezone=timezone,
        auto_stop_seconds=config.auto_stop_seconds,
        misfire_grace_seconds=config.misfire_grace_seconds,
        check_interval=config.check_interval_ms / 1000.0,
        default_title=config.default_title,
    )


def build_parser(config: Config) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="alarm", description="Schedule and silence one-shot alarms")
    sub = parser.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add", help="schedule an alarm for today at h:m:s")
    add.add_argument("id")
    add.add_argument("title")
    add.add_argument("hour", type=int)
    add.add_argument("minute", type=int)
    add.add_argument("second", type=int)
    add.add_argument("sound", nargs="?", default=config.default_sound)

    stop = sub.add_parser("stop", help="silence a ringing alarm")
    stop.add_argument("id")

    sub.add_parser("stop-all", help="silence every ringing alarm")

    remove = sub.add_parser("remove", help="cancel and delete an alarm")
    remove.add_argument("id")

    listing = sub.add_parser("list", help="print stored alarms as JSON")
    listing.add_argument("--table", action="store_true", help="human readable output")

    sub.add_parser("sounds", help="list available sounds")

    preview = sub.add_parser("preview", help="play a sound until it ends or Ctrl-C")
    preview.add_argument("sound")

    sub.add_parser("serve", help="run the scheduler that fires alarms")
    return parser


def dispatch(router: CommandRouter, args: argparse.Namespace) -> CommandResult:
    if args.command == "add":
        return router.add(args.id, args.title, args.hour, args.minute, args.second, args.sound)
    if args.command == "stop":
        return router.stop(args.id)
    if args.command == "stop-all":
        return router.stop_all()
    if args.command == "remove":
        return router.remove(args.id)
    if args.command == "list":
        return router.list(table=args.table)
    if args.command == "sounds":
        return router.sounds()
    if args.command == "preview":
        return router.preview(args.sound)
    return CommandResult.error(f"Unknown command: {args.command}", exit_code=2)


def emit(result: CommandResult) -> int:
    if result.stdout:
        print(result.stdout)
    if result.stderr:
        print(result.stderr, file=sys.stderr)
    return result.exit_code


def wait_for_preview(manager: AlarmManager) -> None:
    try:
        while manager.registry.preview_active:
            time.sleep(0.2)
    except KeyboardInterrupt:
        logger.info("Preview interrupted by user")
    finally:
        manager.stop_preview()


def serve(manager: AlarmManager) -> int:
    def on_notification(notification: Notification) -> None:
        if notification.action_label:
            print(f"{notification.title}: {notification.message} (stop with: alarm stop {notification.alarm_id})", flush=True)
        else:
            print(f"{notification.title}: {notification.message}", flush=True)

    manager.notifier.set_ui_callback(on_notification)
    signal.signal(signal.SIGTERM, graceful_exit)
    tz_offset = format_tz_offset(manager.tzinfo)
    logger.info("Serving alarms from %s (UTC%s)", manager.store.path, tz_offset)
    manager.start()
    print(format_alarm_table(manager.list_alarms(), now_in_tz(manager.tzinfo)), flush=True)
    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        manager.shutdown()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    try:
        config = load_config()
    except ValueError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    setup_logging(config.log_level, config.log_dir)
    args = build_parser(config).parse_args(argv)
    manager = build_manager(config)

    if args.command == "serve":
        return serve(manager)

    router = CommandRouter(manager)
    try:
        code = emit(dispatch(router, args))
    except OSError as exc:
        logger.error("Alarm store I/O failed: %s", exc)
        print(f"Alarm store unavailable: {exc}", file=sys.stderr)
        return 1
    if args.command == "preview" and code == 0:
        wait_for_preview(manager)
    return code


if __name__ == "__main__":
    sys.exit(main())
