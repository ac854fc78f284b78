from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Sequence

import httpx

from .config import config_sha256, load_config, resolve_token
from .config_schema import AppConfig
from .errors import (
    ApiResponseError,
    AuthRequiredError,
    ConfigError,
    ExportError,
    HttpError,
    StorageError,
)
from .export_excel import export_archive_workbook
from .fetcher import TimelineFetcher
from .models import Account
from .run_log import RunLogger
from .storage import SQLiteArchive
from .thresholds import ALL_HISTORY, explore_more_threshold, initial_threshold, utc_now

ARCHIVE_FILENAME = "archive.sqlite"
CRAWL_LOG_FILENAME = "crawl.log"
WORKBOOK_FILENAME = "archive.xlsx"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="timeline_fetch")

    subparsers = parser.add_subparsers(dest="command", required=True)

    verify = subparsers.add_parser(
        "verify",
        help="Check that the configured access token is accepted.",
    )
    verify.add_argument("--config", required=True, help="Path to YAML config file.")
    verify.add_argument(
        "--offline",
        action="store_true",
        help="Talk to a built-in fake instance instead of the network.",
    )
    verify.set_defaults(_handler=_cmd_verify)

    crawl = subparsers.add_parser(
        "crawl",
        help="Fetch an account's posts back to a threshold date and archive them.",
    )
    crawl.add_argument("--config", required=True, help="Path to YAML config file.")
    crawl.add_argument("--out", required=True, help="Output directory for the archive and log.")
    crawl.add_argument(
        "--account",
        default=None,
        help="Handle to crawl (user or user@host). Defaults to the token's own account.",
    )
    window = crawl.add_mutually_exclusive_group()
    window.add_argument(
        "--months",
        type=int,
        default=None,
        help="How many months back to crawl (overrides crawl.initial_months / crawl.explore_months).",
    )
    window.add_argument(
        "--all",
        action="store_true",
        help="Crawl the whole history.",
    )
    crawl.add_argument(
        "--resume",
        action="store_true",
        help="Continue from the cursor stored by the previous crawl of this account.",
    )
    crawl.add_argument(
        "--offline",
        action="store_true",
        help="Talk to a built-in fake instance instead of the network.",
    )
    crawl.set_defaults(_handler=_cmd_crawl)

    search = subparsers.add_parser(
        "search",
        help="Search one author's posts for free text.",
    )
    search.add_argument("--config", required=True, help="Path to YAML config file.")
    search.add_argument("--account", required=True, help="Author handle.")
    search.add_argument("--query", required=True, help="Free-text query.")
    search.add_argument("--limit", type=int, default=None, help="Max results (default: search.limit).")
    search.add_argument(
        "--offline",
        action="store_true",
        help="Talk to a built-in fake instance instead of the network.",
    )
    search.set_defaults(_handler=_cmd_search)

    export = subparsers.add_parser(
        "export",
        help="Write the archive in an output directory to an Excel workbook.",
    )
    export.add_argument("--out", required=True, help="Directory holding archive.sqlite.")
    export.add_argument("--account-id", default=None, help="Only export this account.")
    export.set_defaults(_handler=_cmd_export)

    return parser


def _eprint(message: str) -> None:
    print(message, file=sys.stderr)


def _build_fetcher(
    cfg: AppConfig,
    token: str | None,
    *,
    offline: bool,
    logger: RunLogger | None = None,
) -> TimelineFetcher:
    if not offline:
        return TimelineFetcher.from_config(cfg, token, logger=logger)

    from .offline import OFFLINE_INSTANCE, OfflineInstance

    offline_cfg = cfg.model_copy(
        update={"instance": cfg.instance.model_copy(update={"base_url": OFFLINE_INSTANCE})}
    )
    return TimelineFetcher.from_config(
        offline_cfg,
        token or "offline-token",
        client=OfflineInstance().client(),
        logger=logger,
    )


def _resolve_account(fetcher: TimelineFetcher, handle: str | None) -> Account:
    if (handle or "").strip():
        return fetcher.lookup_account(str(handle))
    return fetcher.verify_credentials()


def _deeper_cursor(stored: str | None, fetched: str | None) -> str | None:
    """The cursor further back in the timeline. Status ids grow with time."""
    if stored is None:
        return fetched
    if fetched is None:
        return stored
    if stored.isdigit() and fetched.isdigit():
        return fetched if int(fetched) < int(stored) else stored
    return fetched


def _cmd_verify(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    token = resolve_token(cfg)

    with _build_fetcher(cfg, token, offline=bool(args.offline)) as fetcher:
        account = fetcher.verify_credentials()

    print(f"account_id={account.id}")
    print(f"acct={account.acct}")
    print(f"display_name={account.display_name or ''}")
    return 0


def _cmd_crawl(args: argparse.Namespace) -> int:
    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)

    log_path = out_dir / CRAWL_LOG_FILENAME
    db_path = out_dir / ARCHIVE_FILENAME

    if args.months is not None and args.months < 1:
        raise ConfigError("--months must be >= 1")

    with RunLogger.open(log_path) as log:
        log.info(
            "crawl_command_started",
            config_path=str(args.config),
            out_dir=str(out_dir),
            account=args.account,
            resume=bool(args.resume),
            fetch_all=bool(args.all),
        )

        try:
            cfg = load_config(args.config)
            token = resolve_token(cfg)
            log.info(
                "config_loaded",
                instance=cfg.instance.base_url,
                token_env=cfg.instance.token_env,
                token_present=token is not None,
            )

            with _build_fetcher(cfg, token, offline=bool(args.offline), logger=log) as fetcher, \
                    SQLiteArchive.open(db_path) as store:
                account = _resolve_account(fetcher, args.account)
                log.bind_account(account.id)
                store.upsert_account(account, instance=fetcher.api.instance)

                now = utc_now()
                state = store.load_cursor(account.id)
                start_cursor = state.last_cursor if args.resume and state is not None else None

                if start_cursor is None:
                    months = args.months or cfg.crawl.initial_months
                    until = initial_threshold(now, months, fetch_all=bool(args.all))
                elif args.all:
                    until = ALL_HISTORY
                else:
                    months = args.months or cfg.crawl.explore_months
                    until = explore_more_threshold(
                        store.oldest_post_created_at(account.id), months, now=now
                    )

                archived_before = store.post_count(account.id)

                def _on_progress(count: int) -> None:
                    _eprint(f"progress={archived_before + count}")

                result = fetcher.get_statuses_until(
                    account.id,
                    until,
                    cursor=start_cursor,
                    on_progress=_on_progress,
                )

                inserted = store.append_posts(account.id, result.posts)
                # A refresh of recent posts must not move the resume point forward.
                store.save_cursor(
                    account.id,
                    _deeper_cursor(state.last_cursor if state else None, result.last_cursor),
                    fell_back=result.fell_back or (state is not None and state.fell_back),
                )
                store.record_crawl(
                    account.id,
                    result,
                    until=until,
                    start_cursor=start_cursor,
                    session_id=log.session_id,
                    config_hash=config_sha256(cfg),
                )
                archived_total = store.post_count(account.id)

            log.info(
                "crawl_command_completed",
                stop_reason=result.stop_reason,
                inserted=inserted,
                archived_total=archived_total,
            )

            print(f"account_id={account.id}")
            print(f"acct={account.acct}")
            print(f"until={until.isoformat()}")
            print(f"stop_reason={result.stop_reason}")
            print(f"reached_threshold={str(result.reached_threshold).lower()}")
            print(f"fell_back={str(result.fell_back).lower()}")
            print(f"pages={result.pages}")
            print(f"fetched={result.total_fetched}")
            print(f"kept={len(result.posts)}")
            print(f"inserted={inserted}")
            print(f"archived_total={archived_total}")
            print(f"last_cursor={result.last_cursor or ''}")
            print(f"archive={db_path}")
            print(f"crawl_log={log_path}")

            return 4 if result.truncated else 0
        except Exception as e:
            log.exception("crawl_command_failed", exc=e)
            raise


def _cmd_search(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    token = resolve_token(cfg)
    limit = int(args.limit) if args.limit is not None else cfg.search.limit
    if limit < 1:
        raise ConfigError("--limit must be >= 1")

    with _build_fetcher(cfg, token, offline=bool(args.offline)) as fetcher:
        posts = fetcher.search_statuses(args.query, args.account, limit=limit)

    for post in posts:
        print(
            json.dumps(
                {
                    "id": post.id,
                    "created_at": post.created_at.isoformat(),
                    "url": post.url,
                    "content": post.content,
                },
                ensure_ascii=False,
                sort_keys=True,
            )
        )
    return 0


def _cmd_export(args: argparse.Namespace) -> int:
    out_dir = Path(args.out)
    db_path = out_dir / ARCHIVE_FILENAME
    if not db_path.exists():
        raise StorageError(f"No archive found at {db_path}")

    xlsx_path = out_dir / WORKBOOK_FILENAME
    with SQLiteArchive.open(db_path) as store:
        export_archive_workbook(store, xlsx_path, account_id=args.account_id)

    print(f"workbook={xlsx_path}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        handler = getattr(args, "_handler")
        return int(handler(args))
    except (ConfigError, AuthRequiredError) as e:
        _eprint(str(e))
        return 2
    except (HttpError, ApiResponseError, StorageError, ExportError) as e:
        _eprint(str(e))
        return 3
    except httpx.TransportError as e:
        _eprint(f"Network error: {e}")
        return 3
    except KeyboardInterrupt:
        _eprint("Interrupted")
        return 130
    except Exception as e:
        _eprint(f"Unexpected error: {e}")
        return 1
