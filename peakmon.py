#!/usr/bin/env python3
"""
peakmon - terminal view of local AI services and the Ollama daemon
"""

import argparse
import logging
import sys
import time
from typing import List

import psutil
import requests
from rich.console import Console, Group
from rich.live import Live
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from ai_metrics import SEARCHING, AiMetrics, format_bytes
from ai_services import ProcessInfo, ProcessState
from chat_worker import ChatStatus
from ollama_client import OllamaClient
from peakmon_config import CONFIG_PATH, MAX_REFRESH_MS, MIN_REFRESH_MS, resolve_settings, save_config
from pull_worker import PullStatus

log = logging.getLogger("peakmon")

console = Console()

# Tick used while a single streaming command is in progress
STREAM_TICK = 0.1

SPARK = " ▁▂▃▄▅▆▇█"
SPARK_WIDTH = 40

_STATES = {
    psutil.STATUS_RUNNING: ProcessState.RUN,
    psutil.STATUS_SLEEPING: ProcessState.SLEEP,
    psutil.STATUS_DISK_SLEEP: ProcessState.SLEEP,
    psutil.STATUS_IDLE: ProcessState.IDLE,
    psutil.STATUS_ZOMBIE: ProcessState.ZOMBIE,
    psutil.STATUS_STOPPED: ProcessState.STOP,
}


def setup_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def sample_processes() -> List[ProcessInfo]:
    procs = []
    for p in psutil.process_iter(["pid", "ppid", "name", "cpu_percent", "memory_info", "status"]):
        info = p.info
        mem = info.get("memory_info")
        procs.append(ProcessInfo(
            pid=info["pid"],
            parent_pid=info.get("ppid"),
            name=info.get("name") or "",
            cpu_usage=info.get("cpu_percent") or 0.0,
            memory=mem.rss if mem else 0,
            status=_STATES.get(info.get("status"), ProcessState.UNKNOWN),
        ))
    return procs


# ---- rendering ----

def services_table(ai: AiMetrics) -> Table:
    table = Table(title="AI services", title_justify="left")
    table.add_column("Service")
    table.add_column("Status")
    table.add_column("PID", justify="right")
    table.add_column("Version")
    for s in ai.services:
        table.add_row(
            s.name,
            "[green]running[/green]" if s.detected else "[dim]-[/dim]",
            str(s.pid) if s.pid else "",
            s.version or "",
        )
    return table


def models_table(ai: AiMetrics) -> Table:
    title = "Models"
    st = ai.pull_status
    if st is not None:
        title += f"  ({pull_label(ai.pull_model, st)})"
    table = Table(title=title, title_justify="left")
    table.add_column("")
    table.add_column("Name")
    table.add_column("Size", justify="right")
    table.add_column("Quant")
    table.add_column("Status")
    table.add_column("VRAM", justify="right")
    for i, m in enumerate(ai.ollama_models):
        table.add_row(
            ">" if i == ai.model_selected else "",
            m.name,
            format_bytes(m.size),
            m.quantization or "",
            ai.model_status(m.name),
            ai.model_vram(m.name) or "",
        )
    return table


def pull_label(name: str, st: PullStatus) -> str:
    if st.kind == PullStatus.ERROR:
        return f"pull {name} failed: {st.message}"
    if st.kind == PullStatus.DONE:
        return f"pulled {name}"
    if st.percent is not None:
        return f"{st.status} {st.percent:.0f}%"
    return st.status


def processes_table(ai: AiMetrics, limit: int = 10) -> Table:
    table = Table(title=f"AI processes  cpu {ai.aggregate_cpu:.1f}%  mem {format_bytes(ai.aggregate_memory)}",
                  title_justify="left")
    table.add_column("PID", justify="right")
    table.add_column("Name")
    table.add_column("CPU%", justify="right")
    table.add_column("Memory", justify="right")
    for p in ai.ai_processes[:limit]:
        table.add_row(str(p.pid), p.name, f"{p.cpu_usage:.1f}", format_bytes(p.memory))
    return table


def search_table(ai: AiMetrics) -> Table:
    table = Table(title=f"Search: {ai.search_query}", title_justify="left")
    table.add_column("#", justify="right")
    table.add_column("Name")
    table.add_column("Sizes")
    table.add_column("Pulls", justify="right")
    table.add_column("Description")
    for i, r in enumerate(ai.search_results, 1):
        table.add_row(str(i), r.name, ", ".join(r.sizes), r.pulls, r.description)
    return table


def metrics_line(ai: AiMetrics) -> str:
    m = ai.chat_metrics
    if m is None:
        return ""
    return (f"{m.tokens_per_sec:.1f} tok/s  ttft {m.ttft_ms:.0f} ms  "
            f"prompt {m.prompt_tokens}  gen {m.gen_tokens}  "
            f"total {m.total_duration_ms:.0f} ms  load {m.load_duration_ms:.0f} ms")


def sparkline(values: List[int], max_val: float) -> str:
    """One block character per sample, scaled against max_val."""
    if max_val <= 0:
        max_val = 1.0
    chars = []
    for v in values:
        idx = int(min(v / max_val, 1.0) * (len(SPARK) - 1))
        chars.append(SPARK[max(0, idx)])
    return "".join(chars)


def trends_line(ai: AiMetrics) -> str:
    line = (f"cpu {ai.cpu_history.last():5.1f}% "
            f"[blue]{sparkline(ai.cpu_history.as_int_list(SPARK_WIDTH), 100.0)}[/blue]")
    if len(ai.tps_history):
        line += (f"   tok/s {ai.tps_history.last():.1f} "
                 f"[green]{sparkline(ai.tps_history.as_int_list(SPARK_WIDTH), ai.tps_history.max())}[/green]")
    return line


def render(ai: AiMetrics) -> Panel:
    parts = [trends_line(ai), services_table(ai), processes_table(ai)]
    if ai.ollama_available:
        parts.append(models_table(ai))
    else:
        parts.append("[dim]Ollama not detected[/dim]")
    return Panel(Group(*parts), title="peakmon", border_style="blue")


# ---- commands ----

def cmd_status(ai: AiMetrics, args) -> int:
    ai.update(sample_processes())
    console.print(render(ai))
    return 0


def cmd_watch(ai: AiMetrics, args) -> int:
    tick = args.settings.refresh_secs
    try:
        with Live(render(ai), console=console, refresh_per_second=4) as live:
            while True:
                ai.update(sample_processes())
                live.update(render(ai))
                time.sleep(tick)
    except KeyboardInterrupt:
        pass
    return 0


def _require_ollama(ai: AiMetrics, procs: List[ProcessInfo]) -> bool:
    ai.update(procs)
    if not ai.ollama_available:
        console.print("❌ Ollama is not running", style="bold red")
        return False
    return True


def cmd_pull(ai: AiMetrics, args) -> int:
    procs = sample_processes()
    if not _require_ollama(ai, procs):
        return 1
    ai.start_pull(args.name)
    return _follow_pull(ai, procs, args.name)


def _follow_pull(ai: AiMetrics, procs: List[ProcessInfo], name: str) -> int:
    progress = Progress(
        SpinnerColumn(),
        TextColumn("{task.description}"),
        BarColumn(bar_width=40),
        TextColumn("{task.percentage:>5.1f}%"),
        console=console,
    )
    with progress:
        task_id = progress.add_task(f"pulling {name}", total=100)
        while name in ai.pulls_in_flight():
            time.sleep(STREAM_TICK)
            ai.update(procs)
            st = ai.pull_states.get(name)
            if st is not None and st.kind == PullStatus.PROGRESS:
                progress.update(task_id, description=st.status or f"pulling {name}",
                                completed=st.percent if st.percent is not None else 0)
    st = ai.pull_states.get(name)
    if st is not None and st.kind == PullStatus.ERROR:
        console.print(f"❌ {st.message}", style="bold red")
        return 1
    console.print(f"✅ pulled {name}", style="green")
    return 0


def cmd_chat(ai: AiMetrics, args) -> int:
    procs = sample_processes()
    if not _require_ollama(ai, procs):
        return 1
    if not ai.send_chat(args.prompt, args.model):
        console.print("❌ No model loaded; load one or pass --model", style="bold red")
        return 1
    shown = 0
    while ai.chat_status == ChatStatus.GENERATING:
        time.sleep(STREAM_TICK)
        ai.update(procs)
        text = ai.chat_messages[-1].content
        if len(text) > shown:
            console.print(text[shown:], end="", markup=False, highlight=False)
            shown = len(text)
    console.print()
    if ai.chat_status == ChatStatus.ERROR:
        console.print(f"❌ {ai.chat_error}", style="bold red")
        return 1
    console.print(metrics_line(ai), style="dim")
    return 0


def cmd_search(ai: AiMetrics, args) -> int:
    ai.start_search(args.query)
    with console.status(SEARCHING):
        while ai.search_status == SEARCHING:
            time.sleep(STREAM_TICK)
            ai.update([])
    if ai.search_status:
        console.print(ai.search_status, style="yellow")
        return 1 if ai.search_status.startswith("Search failed") else 0
    console.print(search_table(ai))
    if args.pull is None:
        return 0
    if not 1 <= args.pull <= len(ai.search_results):
        console.print(f"❌ --pull must be between 1 and {len(ai.search_results)}", style="bold red")
        return 1
    procs = sample_processes()
    if not _require_ollama(ai, procs):
        return 1
    for _ in range(args.pull - 1):
        ai.search_select_next()
    name = ai.pull_search_result()
    return _follow_pull(ai, procs, name)


def _direct(action: str):
    def run(ai: AiMetrics, args) -> int:
        try:
            getattr(ai.client, f"{action}_model")(args.name)
        except requests.RequestException as e:
            console.print(f"❌ {action} {args.name} failed: {e}", style="bold red")
            return 1
        console.print(f"✅ {action} {args.name}", style="green")
        return 0
    return run


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="peakmon",
        description="Watch local AI services and manage Ollama models",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  peakmon watch                       # live AI panel
  peakmon pull llama3.2:1b            # download a model
  peakmon chat "why is the sky blue"  # chat with the first loaded model
  peakmon search qwen                 # search the ollama.com library
  peakmon search qwen --pull 1        # pull the first result's smallest size
  peakmon -r 500 --save status        # remember a 500 ms refresh rate
        """,
    )
    parser.add_argument("--host", default=None, help="Ollama base URL (overrides OLLAMA_HOST)")
    parser.add_argument("--refresh-rate", "-r", type=int, default=None,
                        help=f"refresh interval in ms ({MIN_REFRESH_MS}-{MAX_REFRESH_MS})")
    parser.add_argument("--debug", action="store_true", help="enable debug logging")
    parser.add_argument("--save", action="store_true",
                        help="write the resolved settings to the config file")

    sub = parser.add_subparsers(dest="command")
    sub.add_parser("status", help="print services and models once").set_defaults(func=cmd_status)
    sub.add_parser("watch", help="live refresh until Ctrl-C").set_defaults(func=cmd_watch)

    p = sub.add_parser("pull", help="pull a model")
    p.add_argument("name")
    p.set_defaults(func=cmd_pull)

    p = sub.add_parser("chat", help="send one chat message")
    p.add_argument("prompt")
    p.add_argument("--model", "-m", default=None)
    p.set_defaults(func=cmd_chat)

    p = sub.add_parser("search", help="search the model library")
    p.add_argument("query")
    p.add_argument("--pull", "-p", type=int, default=None, metavar="N",
                   help="pull result N (1-based) at its smallest size")
    p.set_defaults(func=cmd_search)

    for action in ("delete", "load", "unload"):
        p = sub.add_parser(action, help=f"{action} a model")
        p.add_argument("name")
        p.set_defaults(func=_direct(action))
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.debug)
    args.settings = resolve_settings(refresh_rate_ms=args.refresh_rate, ollama_host=args.host)
    log.debug("settings: %s", args.settings.to_dict())
    if args.save:
        save_config(args.settings.to_dict(), CONFIG_PATH)
        log.info("saved settings to %s", CONFIG_PATH)
    ai = AiMetrics(OllamaClient(args.settings.ollama_host), search_url=args.settings.search_url)
    func = getattr(args, "func", cmd_status)
    return func(ai, args)


if __name__ == "__main__":
    sys.exit(main())
