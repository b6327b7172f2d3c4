"""Console entry point for the offline sync engine."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from core.settings import CLI_LOG_PATH, REMOTE
from models.sync_state import display_text
from services.connectivity import ConnectivityMonitor
from services.pending_ops_queue import PendingOpsQueue
from services.remote_store import HttpRemoteStore, RemoteStore
from services.retry_policy import RetryPolicy
from services.status import StatusProjection
from services.sync_engine import SyncEngine
from services.sync_meta_storage import SyncMetaStorage
from storage.db import get_session, init_db


NETWORK_COMMANDS = {"sync", "full-sync", "retry-failed", "run"}


@dataclass
class SyncRuntime:
    """The process-wide set of sync components, built once at startup."""

    queue: PendingOpsQueue
    remote: RemoteStore
    monitor: ConnectivityMonitor
    engine: SyncEngine
    status: StatusProjection

    async def aclose(self) -> None:
        self.status.close()
        await self.engine.close()
        await self.monitor.stop()
        closer = getattr(self.remote, "aclose", None)
        if closer is not None:
            await closer()


def build_runtime(
    *,
    remote: Optional[RemoteStore] = None,
    session_factory=get_session,
    meta: Optional[SyncMetaStorage] = None,
) -> SyncRuntime:
    if session_factory is get_session:
        init_db()
    queue = PendingOpsQueue(session_factory=session_factory, policy=RetryPolicy.from_settings())
    remote = remote or HttpRemoteStore()
    monitor = ConnectivityMonitor(remote.check_health)
    engine = SyncEngine(queue, remote, monitor, meta=meta or SyncMetaStorage())
    return SyncRuntime(
        queue=queue,
        remote=remote,
        monitor=monitor,
        engine=engine,
        status=StatusProjection(engine),
    )


def _setup_logging(log_path: Path, verbose: bool = False) -> None:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        filename=str(log_path),
        filemode="a",
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


async def _run_forever(runtime: SyncRuntime) -> None:
    runtime.status.subscribe(lambda status: print(status.status_text, flush=True))
    runtime.monitor.start()
    runtime.engine.start()
    await asyncio.Event().wait()


async def run_command(args: argparse.Namespace, runtime: SyncRuntime) -> int:
    engine = runtime.engine
    command = args.command

    if command == "status":
        print(json.dumps(runtime.status.current.as_dict(), indent=2, ensure_ascii=False))
        for op in runtime.queue.list_failed():
            print(f"failed #{op.id}: {op.kind} {op.entity_type}:{op.entity_id} -> {op.last_error}")
        return 0

    if command == "discard":
        if args.all_failed:
            removed = engine.discard_failed()
        elif args.op_id is not None:
            removed = int(engine.discard(args.op_id))
        else:
            print("Nothing to discard: pass an operation id or --all-failed")
            return 2
        print(f"Discarded {removed} operation(s)")
        return 0

    if command == "clear":
        removed = engine.clear_pending(reset_meta=args.reset_meta)
        print(f"Cleared {removed} operation(s)")
        return 0

    if command == "run":
        await _run_forever(runtime)
        return 0

    runtime.queue.recover_in_flight()
    if not await runtime.monitor.probe():
        print("Remote is unreachable; changes stay queued.")
        return 1
    if command == "sync":
        state = await engine.process_pending_queue()
    elif command == "full-sync":
        state = await engine.perform_full_sync()
    else:
        state = await engine.retry_failed()
    print(display_text(state))
    return 0 if engine.failed_operations_count == 0 else 1


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__ or "")
    parser.add_argument(
        "--log",
        type=Path,
        default=CLI_LOG_PATH,
        help="Path to a log file (default: %(default)s)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug messages")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("status", help="Show queue and sync status")
    sub.add_parser("sync", help="Send queued changes now")
    sub.add_parser("full-sync", help="Send queued changes, then pull remote changes")
    sub.add_parser("retry-failed", help="Retry every operation in the failed bucket")
    sub.add_parser("run", help="Keep syncing in the background until interrupted")
    discard = sub.add_parser("discard", help="Drop failed operations")
    discard.add_argument("op_id", nargs="?", type=int, help="Operation id from 'status'")
    discard.add_argument("--all-failed", action="store_true", help="Drop the whole failed bucket")
    clear = sub.add_parser("clear", help="Drop every queued and failed operation")
    clear.add_argument(
        "--reset-meta", action="store_true", help="Also forget the last sync and pull timestamps"
    )
    args = parser.parse_args(argv)

    if args.command in NETWORK_COMMANDS and not REMOTE.configured:
        parser.error("VELOCE_REMOTE_URL is not set")

    _setup_logging(args.log, args.verbose)

    async def _main() -> int:
        runtime = build_runtime()
        try:
            return await run_command(args, runtime)
        finally:
            await runtime.aclose()

    try:
        return asyncio.run(_main())
    except KeyboardInterrupt:
        return 130
    except Exception as exc:
        logging.exception("Command %s failed: %s", args.command, exc)
        raise


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
