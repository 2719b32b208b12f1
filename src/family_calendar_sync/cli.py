import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Iterable, List, Optional

from .config.sync_config import ConfigManager
from .core.models import CalendarEvent, SyncSettings
from .layers.data_acquisition.error_handler import CalendarSyncError, ReauthRequired
from .layers.sync_layer.sync_engine import SyncEngine, create_sync_engine
from .utils.enhanced_logger import setup_logging

EXIT_ERROR = 1
EXIT_REAUTH = 2


def load_events(path: Path) -> List[CalendarEvent]:
    if not path.exists():
        return []
    with open(path, "r", encoding="utf-8") as f:
        return [CalendarEvent.from_dict(item) for item in json.load(f)]


def save_events(path: Path, events: List[CalendarEvent]):
    with open(path, "w", encoding="utf-8") as f:
        json.dump([event.to_dict() for event in events], f, ensure_ascii=False, indent=2)


def load_settings(path: Path) -> SyncSettings:
    if not path.exists():
        return SyncSettings()
    with open(path, "r", encoding="utf-8") as f:
        return SyncSettings.from_dict(json.load(f))


def save_settings(path: Path, settings: SyncSettings):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(settings.to_dict(), f, ensure_ascii=False, indent=2)


async def cmd_auth_url(engine: SyncEngine, args) -> int:
    print(engine.get_authorization_url(args.state))
    return 0


async def cmd_exchange(engine: SyncEngine, args) -> int:
    await engine.complete_authorization(args.code)
    print("Connected.")
    return 0


async def cmd_calendars(engine: SyncEngine, args) -> int:
    for calendar in await engine.get_calendar_list():
        flags = " (primary)" if calendar.primary else ""
        access = "" if calendar.writable else " [read-only]"
        print(f"{calendar.id}\t{calendar.summary}{flags}{access}")
    return 0


async def cmd_sync(engine: SyncEngine, args) -> int:
    events_path = Path(args.events)
    settings_path = Path(args.settings)
    events = load_events(events_path)
    settings = load_settings(settings_path)

    result = await engine.sync(settings, events, timeout=args.timeout)

    # インポートされたイベントはファイルへ追記
    save_events(events_path, events + result.imported_events)
    save_settings(settings_path, settings)

    print(result.summary())
    for conflict in result.conflicts:
        print(f"  conflict: {conflict.summary()}")
    for error in result.errors:
        print(f"  error: {error}", file=sys.stderr)

    if result.reauth_required:
        return EXIT_REAUTH
    return 0 if result.success else EXIT_ERROR


async def cmd_export_event(engine: SyncEngine, args) -> int:
    events_path = Path(args.events)
    events = load_events(events_path)

    target = next((event for event in events if event.id == args.id), None)
    if target is None:
        raise SystemExit(f"イベントが見つかりません: {args.id}")

    try:
        remote_id = await engine.export_single_event(target, args.calendar)
    except ValueError as e:
        print(f"エクスポートできません: {e}", file=sys.stderr)
        return EXIT_ERROR
    save_events(events_path, events)
    print(remote_id)
    return 0


async def cmd_disconnect(engine: SyncEngine, args) -> int:
    await engine.disconnect()
    print("Disconnected.")
    return 0


async def cmd_status(engine: SyncEngine, args) -> int:
    authenticated = await engine.is_authenticated()
    print(f"account: {engine.account_id}")
    print(f"authenticated: {'yes' if authenticated else 'no'}")

    if args.settings:
        settings = load_settings(Path(args.settings))
        last_sync = settings.last_sync_at.isoformat() if settings.last_sync_at else "never"
        print(f"last sync: {last_sync}")
        print(f"sync due: {'yes' if settings.is_due() else 'no'}")
    return 0


COMMANDS = {
    "auth-url": cmd_auth_url,
    "exchange": cmd_exchange,
    "calendars": cmd_calendars,
    "sync": cmd_sync,
    "export-event": cmd_export_event,
    "disconnect": cmd_disconnect,
    "status": cmd_status,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Family calendar sync")
    parser.add_argument("--config-dir", default="config", help="sync.yaml を置くディレクトリ")
    parser.add_argument("--secrets-dir", default="config/secrets", help=".env を置くディレクトリ")
    parser.add_argument("--account", default="default", help="アカウントID")
    sub = parser.add_subparsers(dest="command", required=True)

    auth_url = sub.add_parser("auth-url", help="認可URLを表示")
    auth_url.add_argument("--state", help="CSRF対策のstate値")

    exchange = sub.add_parser("exchange", help="認可コードをトークンに交換")
    exchange.add_argument("code")

    sub.add_parser("calendars", help="カレンダー一覧を表示")

    sync = sub.add_parser("sync", help="同期を実行")
    sync.add_argument("--events", required=True, help="ローカルイベントのJSONファイル")
    sync.add_argument("--settings", required=True, help="同期設定のJSONファイル")
    sync.add_argument("--timeout", type=float, help="タイムアウト秒数")

    export_event = sub.add_parser("export-event", help="1件のイベントをエクスポート")
    export_event.add_argument("--events", required=True, help="ローカルイベントのJSONファイル")
    export_event.add_argument("--id", required=True, help="イベントID")
    export_event.add_argument("--calendar", help="エクスポート先カレンダーID")

    sub.add_parser("disconnect", help="連携を解除")

    status = sub.add_parser("status", help="接続状態を表示")
    status.add_argument("--settings", help="同期設定のJSONファイル")

    return parser


async def run(args) -> int:
    config_manager = ConfigManager(args.config_dir, args.secrets_dir)
    config = config_manager.load_config()
    setup_logging(config.logging)

    async with create_sync_engine(config, args.account,
                                  security=config_manager.security_manager) as engine:
        return await COMMANDS[args.command](engine, args)


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        return asyncio.run(run(args))
    except ReauthRequired as e:
        print(f"再認証が必要です: {e}", file=sys.stderr)
        return EXIT_REAUTH
    except CalendarSyncError as e:
        print(f"エラー: {e}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
