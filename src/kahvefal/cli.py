from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from .api import Kahve, backend_from_name
from .config import (
    cfg_flatten_keys,
    cfg_get,
    cfg_set,
    coerce_scalar,
    config_path,
    load_config,
    resolve,
    save_config,
)
from .errors import KahveError
from .playback import PlaybackClock
from .prompts import SUPPORTED_LOCALES
from .reader import read_along, timeline_sidecar_path
from .session import KIND_COFFEE, KIND_DREAM, FortuneSession, ReadingInput, ReadingOutcome, SessionState
from .state import READING_KINDS, StateStore
from .timeline import SentenceTimeline

console = Console()

STAGE_LABELS = {
    SessionState.DEBITING: "Spending a credit",
    SessionState.GENERATING_TEXT: "Reading the signs",
    SessionState.GENERATING_SPEECH: "Recording the narration",
    SessionState.READY: "Ready",
    SessionState.ERROR: "Failed",
}


class CliLogger:
    def __init__(self, level: int, log_path: Optional[Path]) -> None:
        self.level = max(0, min(3, int(level)))
        self.log_path = log_path
        self._enabled = self.level > 0 and self.log_path is not None

    def write(self, level: int, message: str) -> None:
        if not self._enabled or int(level) > self.level:
            return
        ts = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        with self.log_path.open("a", encoding="utf-8") as f:
            f.write(f"[{ts}] {message}\n")


def _resolve_log_file_path(level: int, raw: Optional[str]) -> Optional[Path]:
    if level <= 0:
        return None
    default_name = f"kahvefal-{datetime.now().strftime('%y%m%d.%H%M')}.log"
    if raw:
        p = Path(raw).expanduser()
        # Existing directory, trailing slash or no suffix means "folder target".
        if (p.exists() and p.is_dir()) or str(raw).endswith("/") or p.suffix == "":
            return p / default_name
        return p
    return Path.cwd() / default_name


def _setup_logger(args: argparse.Namespace, cfg: dict[str, Any]) -> CliLogger:
    level = int(resolve(getattr(args, "logging", None), cfg, "global.logging", 0) or 0)
    raw = resolve(getattr(args, "logging_file", None), cfg, "global.logging_file", None)
    log_path = _resolve_log_file_path(level, raw)
    clear = bool(getattr(args, "logging_clear", False)) or bool(cfg_get(cfg, "global.logging_clear", False))
    if log_path and clear:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.write_text("", encoding="utf-8")
    logger = CliLogger(level=level, log_path=log_path)
    if logger.log_path is not None and logger.level > 0:
        logger.write(1, f"log_file={logger.log_path}")
    return logger


def _display_mode(args: argparse.Namespace, cfg: dict[str, Any]) -> str:
    cli = args.display
    if cli is None:
        cli = cfg_get(cfg, "global.display", "normal")
    if cli in {"r", "rich"}:
        return "rich"
    return "normal"


def _verbosity(args: argparse.Namespace, cfg: dict[str, Any]) -> int:
    if getattr(args, "quiet", False):
        return 0
    if args.verbose is not None:
        return max(0, min(3, int(args.verbose)))
    return int(cfg_get(cfg, "global.verbose", 2))


def _print(obj: Any, *, verbosity: int, display: str) -> None:
    if verbosity <= 0:
        return
    if verbosity == 1:
        if isinstance(obj, dict):
            for k in ("audio", "text", "credits", "locale"):
                if obj.get(k) not in (None, ""):
                    print(obj[k])
        else:
            print(obj)
        return
    if display == "rich":
        console.print_json(json.dumps(obj, indent=2, ensure_ascii=False))
    else:
        print(json.dumps(obj, indent=2, ensure_ascii=False))


def _info_printer(logger: CliLogger, verbosity: int) -> Callable[[str], None]:
    def info_cb(message: str) -> None:
        if verbosity >= 3:
            console.log(message)
        logger.write(2, message)

    return info_cb


def _build_kahve(cfg: dict[str, Any], logger: CliLogger, verbosity: int) -> Kahve:
    def on_purchase_required() -> None:
        logger.write(1, "purchase required")
        if verbosity >= 1:
            console.print("[yellow]No credits left.[/yellow] See packs with: kahvefal credits packs")

    return Kahve(cfg, info_cb=_info_printer(logger, verbosity), on_purchase_required=on_purchase_required)


def _outcome_payload(kind: str, outcome: ReadingOutcome, k: Kahve) -> dict[str, Any]:
    return {
        "kind": kind,
        "ok": outcome.ok,
        "state": outcome.state.value,
        "error": f"{type(outcome.error).__name__}: {outcome.error}" if outcome.error else None,
        "refunded": outcome.refunded,
        "credits": k.credits(),
        "audio": str(outcome.audio_path) if outcome.audio_path else None,
        "sentences": len(outcome.timeline) if outcome.timeline is not None else 0,
    }


def _run_session(
    session: FortuneSession,
    value: ReadingInput,
    *,
    display: str,
    verbosity: int,
    logger: CliLogger,
) -> ReadingOutcome:
    if not (display == "rich" and verbosity >= 2):
        return session.submit(value).result()
    with Progress(
        SpinnerColumn(),
        TextColumn("[bold]{task.description}"),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Starting", total=None)

        def on_change(s: FortuneSession) -> None:
            label = STAGE_LABELS.get(s.state, s.state.value)
            progress.update(task, description=label)
            logger.write(3, f"progress kind={s.kind} state={s.state.value}")

        session.on_change = on_change
        try:
            return session.submit(value).result()
        finally:
            session.on_change = None


def _finish_reading(
    args: argparse.Namespace,
    cfg: dict[str, Any],
    k: Kahve,
    session: FortuneSession,
    outcome: ReadingOutcome,
    *,
    display: str,
    verbosity: int,
    logger: CliLogger,
) -> None:
    if outcome.text and verbosity >= 2:
        title = "Coffee reading" if session.kind == KIND_COFFEE else "Dream interpretation"
        if display == "rich":
            console.print(Panel(outcome.text, title=title))
        else:
            print(f"\n{title}\n\n{outcome.text}\n")
    if outcome.ok and outcome.audio_path is not None and outcome.timeline is not None:
        sidecar = timeline_sidecar_path(outcome.audio_path)
        sidecar.write_text(json.dumps(outcome.timeline.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8")
        logger.write(2, f"timeline saved: {sidecar}")
    _print(_outcome_payload(session.kind, outcome, k), verbosity=verbosity, display=display)
    logger.write(1, f"reading kind={session.kind} ok={outcome.ok} state={outcome.state.value}")

    if not outcome.ok:
        raise SystemExit(1)
    if args.no_play or not sys.stdin.isatty():
        return
    result = read_along(
        session.clock,
        outcome.timeline,
        window=int(resolve(None, cfg, "read.window", 8)),
        seek_seconds=float(resolve(None, cfg, "read.seek_seconds", 10)),
    )
    logger.write(2, f"read-along finished {result}")


def _cmd_dream(args: argparse.Namespace) -> None:
    cfg = load_config()
    display = _display_mode(args, cfg)
    verbosity = _verbosity(args, cfg)
    logger = _setup_logger(args, cfg)
    if args.file:
        text = Path(args.file).expanduser().read_text(encoding="utf-8")
    elif args.text:
        text = args.text
    elif not sys.stdin.isatty():
        text = sys.stdin.read()
    else:
        text = console.input("Describe your dream: ")
    logger.write(1, f"command=dream chars={len(text)}")

    k = _build_kahve(cfg, logger, verbosity)
    try:
        session = k.session(KIND_DREAM)
        outcome = _run_session(session, ReadingInput(dream_text=text), display=display, verbosity=verbosity, logger=logger)
        _finish_reading(args, cfg, k, session, outcome, display=display, verbosity=verbosity, logger=logger)
    finally:
        k.close()


def _cmd_coffee(args: argparse.Namespace) -> None:
    cfg = load_config()
    display = _display_mode(args, cfg)
    verbosity = _verbosity(args, cfg)
    logger = _setup_logger(args, cfg)
    cup = Path(args.cup).expanduser()
    plate = Path(args.plate).expanduser() if args.plate else None
    logger.write(1, f"command=coffee cup={cup} plate={plate}")

    k = _build_kahve(cfg, logger, verbosity)
    try:
        session = k.session(KIND_COFFEE)
        outcome = _run_session(session, ReadingInput(cup=cup, plate=plate), display=display, verbosity=verbosity, logger=logger)
        _finish_reading(args, cfg, k, session, outcome, display=display, verbosity=verbosity, logger=logger)
    finally:
        k.close()


def _cmd_last(args: argparse.Namespace) -> None:
    cfg = load_config()
    display = _display_mode(args, cfg)
    verbosity = _verbosity(args, cfg)
    logger = _setup_logger(args, cfg)
    logger.write(1, f"command=last kind={args.kind}")
    store = _state_store(cfg)
    last = store.last_reading(args.kind)
    if last is None:
        raise FileNotFoundError(f"No saved {args.kind} reading yet.")
    if display == "rich" and verbosity >= 2:
        console.print(Panel(last.narrative, title=f"Last {args.kind} reading ({last.saved_at or '?'})"))
        return
    _print({"kind": last.kind, "input": last.input, "saved_at": last.saved_at, "text": last.narrative}, verbosity=verbosity, display=display)


def _state_store(cfg: dict[str, Any]) -> StateStore:
    state_file = cfg_get(cfg, "global.state_file")
    return StateStore(Path(state_file).expanduser() if state_file else None)


def _cmd_read(args: argparse.Namespace) -> None:
    cfg = load_config()
    display = _display_mode(args, cfg)
    verbosity = _verbosity(args, cfg)
    logger = _setup_logger(args, cfg)
    audio = Path(args.audio).expanduser()
    if not audio.exists():
        raise FileNotFoundError(f"Audio not found: {audio}")
    logger.write(1, f"command=read audio={audio}")

    store = _state_store(cfg)
    clock = PlaybackClock(
        backend_from_name(resolve(args.backend, cfg, "read.backend", "auto")),
        sample_interval=float(cfg_get(cfg, "read.sample_interval", 0.1)),
    )
    duration = clock.load(audio, autoplay=False)
    locale = store.active_locale()

    sidecar = timeline_sidecar_path(audio)
    if args.text:
        narrative = Path(args.text).expanduser().read_text(encoding="utf-8")
        timeline = SentenceTimeline.for_narrative(narrative, duration, locale=locale)
    elif args.last:
        last = store.last_reading(args.last)
        if last is None:
            raise FileNotFoundError(f"No saved {args.last} reading yet.")
        timeline = SentenceTimeline.for_narrative(last.narrative, duration, locale=locale)
    elif sidecar.exists():
        timeline = SentenceTimeline.from_dict(json.loads(sidecar.read_text(encoding="utf-8")))
    else:
        raise FileNotFoundError(f"No text for {audio.name}: pass --text or --last, or keep {sidecar.name} beside it.")
    logger.write(2, f"timeline sentences={len(timeline)} duration={duration:.2f}")

    try:
        result = read_along(
            clock,
            timeline,
            window=int(resolve(args.window, cfg, "read.window", 8)),
            seek_seconds=float(cfg_get(cfg, "read.seek_seconds", 10)),
            start_at=float(args.seconds) if args.seconds is not None else 0.0,
            title=audio.name,
        )
    finally:
        clock.unload()
    logger.write(2, f"read-along finished {result}")
    if verbosity >= 3:
        _print(result, verbosity=verbosity, display=display)


def _cmd_credits(args: argparse.Namespace) -> None:
    cfg = load_config()
    display = _display_mode(args, cfg)
    verbosity = _verbosity(args, cfg)
    logger = _setup_logger(args, cfg)
    logger.write(1, f"command=credits action={args.credits_action}")
    k = _build_kahve(cfg, logger, verbosity)
    try:
        if args.credits_action == "show":
            _print({"credits": k.credits()}, verbosity=verbosity, display=display)
            return
        if args.credits_action == "packs":
            packs = k.packs()
            if display == "rich" and verbosity >= 2:
                table = Table(title="Credit packs")
                table.add_column("Product")
                table.add_column("Credits", justify="right")
                table.add_column("Price", justify="right")
                for p in packs:
                    table.add_row(p.product_id, str(p.credits), p.formatted_price)
                console.print(table)
                return
            _print(
                [{"product_id": p.product_id, "title": p.display_title, "price": p.formatted_price} for p in packs],
                verbosity=verbosity,
                display=display,
            )
            return
        if args.credits_action == "buy":
            granted = k.buy(args.product_id)
            logger.write(1, f"purchase product={args.product_id} granted={granted}")
            _print({"granted": granted, "credits": k.credits()}, verbosity=verbosity, display=display)
            return
        raise ValueError(f"Unknown credits action: {args.credits_action}")
    finally:
        k.close()


def _cmd_locale(args: argparse.Namespace) -> None:
    cfg = load_config()
    display = _display_mode(args, cfg)
    verbosity = _verbosity(args, cfg)
    logger = _setup_logger(args, cfg)
    store = _state_store(cfg)
    if args.locale:
        store.set_active_locale(args.locale)
        logger.write(1, f"locale set {args.locale}")
    _print({"locale": store.active_locale()}, verbosity=verbosity, display=display)


def _cmd_config(args: argparse.Namespace) -> None:
    cfg = load_config()
    logger = _setup_logger(args, cfg)
    logger.write(1, f"command=config action={args.config_action}")
    if args.config_action == "path":
        print(config_path())
        return
    if args.config_action == "show":
        print(json.dumps(cfg, indent=2))
        print("\nHow to change settings:")
        print("  kahvefal config set <dotted.key> <value>")
        print("  kahvefal config get <dotted.key>")
        print("\nExamples:")
        print("  kahvefal config set speech.voice nova")
        print("  kahvefal config set global.display rich")
        print("  kahvefal config set session.refund_on_generation_failure false")
        print("\nEditable keys:")
        for key in sorted(cfg_flatten_keys(cfg)):
            print(f"  - {key}")
        return
    if args.config_action == "get":
        print(json.dumps(cfg_get(cfg, args.key, None), indent=2))
        return
    if args.config_action == "set":
        cfg_set(cfg, args.key, coerce_scalar(args.value))
        path = save_config(cfg)
        print(f"Saved {args.key} in {path}")
        return
    raise ValueError(f"Unknown config action: {args.config_action}")


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--quiet", action="store_true", help="Minimal output")
    parser.add_argument("-d", "--display", choices=["rich", "normal", "r", "n"], default=None, help="Display style")
    parser.add_argument("--verbose", type=int, choices=[0, 1, 2, 3], default=None, help="Verbosity level")
    parser.add_argument("--logging", type=int, choices=[0, 1, 2, 3], default=None, help="File logging level")
    parser.add_argument("--logging-file", default=None, help="Log file path or folder")
    parser.add_argument("--logging-clear", action="store_true", help="Clear log file before writing")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="kahvefal", description="Coffee-cup readings and dream interpretations, narrated")
    _add_common_options(p)

    sub = p.add_subparsers(dest="command", required=True)

    dr = sub.add_parser("dream", help="Interpret a dream description")
    _add_common_options(dr)
    dr.add_argument("text", nargs="?", help="Dream description (or use --file / stdin)")
    dr.add_argument("--file", "-f", help="Read the dream description from a text file")
    dr.add_argument("--no-play", action="store_true", help="Generate the narration but do not open the player")
    dr.set_defaults(func=_cmd_dream)

    cf = sub.add_parser("coffee", help="Read a coffee cup (and optionally its plate) from photos")
    _add_common_options(cf)
    cf.add_argument("cup", help="Photo of the cup")
    cf.add_argument("--plate", help="Photo of the plate")
    cf.add_argument("--no-play", action="store_true", help="Generate the narration but do not open the player")
    cf.set_defaults(func=_cmd_coffee)

    ls = sub.add_parser("last", help="Show the last saved reading of a kind")
    _add_common_options(ls)
    ls.add_argument("kind", choices=list(READING_KINDS))
    ls.set_defaults(func=_cmd_last)

    rd = sub.add_parser("read", help="Play narration audio with the active sentence highlighted")
    _add_common_options(rd)
    rd.add_argument("audio", help="Path to the narration audio")
    src = rd.add_mutually_exclusive_group()
    src.add_argument("--text", help="Narrative text file matching the audio")
    src.add_argument("--last", choices=list(READING_KINDS), help="Use the last saved reading of this kind")
    rd.add_argument("--seconds", default=None, help="Start time in seconds")
    rd.add_argument("--window", default=None, help="Sentences of context around the active one")
    rd.add_argument("--backend", choices=["auto", "avfoundation", "ffplay"], default=None)
    rd.set_defaults(func=_cmd_read)

    cr = sub.add_parser("credits", help="Show or buy reading credits")
    _add_common_options(cr)
    cr_sub = cr.add_subparsers(dest="credits_action", required=True)
    cr_show = cr_sub.add_parser("show", help="Show the remaining credits")
    _add_common_options(cr_show)
    cr_packs = cr_sub.add_parser("packs", help="List credit packs")
    _add_common_options(cr_packs)
    cr_buy = cr_sub.add_parser("buy", help="Buy a credit pack")
    _add_common_options(cr_buy)
    cr_buy.add_argument("product_id")
    cr.set_defaults(func=_cmd_credits)

    lc = sub.add_parser("locale", help="Show or set the reading language")
    _add_common_options(lc)
    lc.add_argument("locale", nargs="?", choices=list(SUPPORTED_LOCALES))
    lc.set_defaults(func=_cmd_locale)

    cfg = sub.add_parser("config", help="Show or update kahvefal defaults config")
    _add_common_options(cfg)
    cfg_sub = cfg.add_subparsers(dest="config_action", required=True)
    cfg_path = cfg_sub.add_parser("path", help="Show config file path")
    _add_common_options(cfg_path)
    cfg_show = cfg_sub.add_parser("show", help="Show effective config")
    _add_common_options(cfg_show)
    cfg_get_p = cfg_sub.add_parser("get", help="Get config value by dotted path")
    _add_common_options(cfg_get_p)
    cfg_get_p.add_argument("key")
    cfg_set_p = cfg_sub.add_parser("set", help="Set config value by dotted path")
    _add_common_options(cfg_set_p)
    cfg_set_p.add_argument("key")
    cfg_set_p.add_argument("value")
    cfg.set_defaults(func=_cmd_config)

    return p


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    try:
        args = parser.parse_args(sys.argv[1:] if argv is None else argv)
        args.func(args)
    except KahveError as e:
        print(f"{type(e).__name__}: {e}")
        raise SystemExit(1)
    except FileNotFoundError as e:
        print(str(e))
        raise SystemExit(1)
    except KeyboardInterrupt:
        print("Cancelled.")
        raise SystemExit(1)
