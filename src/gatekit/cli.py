from __future__ import annotations

import functools
import json
from pathlib import Path
from typing import Callable, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from gatekit.app import (
    PIPELINE_STACK,
    SERVICE_STACK,
    build_app,
    build_pipeline_plan,
    build_service_topology,
    pipeline_settings,
    qa_config,
)
from gatekit.config.context import AppContext, load_context, parse_context_pairs
from gatekit.config.logging_config import configure_logging
from gatekit.errors import GatekitError
from gatekit.pipeline.runner import LocalExecutor, PipelineRunner
from gatekit.pipeline.template import render_pipeline_template
from gatekit.qa.project import run_contract_tests
from gatekit.stores.parameters import SsmParameterStore
from gatekit.topology.template import render_service_template


app = typer.Typer(no_args_is_help=True, add_completion=False)

synth_app = typer.Typer(no_args_is_help=True)
app.add_typer(synth_app, name="synth")

routes_app = typer.Typer(no_args_is_help=True)
app.add_typer(routes_app, name="routes")

graph_app = typer.Typer(no_args_is_help=True)
app.add_typer(graph_app, name="graph")

pipeline_app = typer.Typer(no_args_is_help=True)
app.add_typer(pipeline_app, name="pipeline")

qa_app = typer.Typer(no_args_is_help=True)
app.add_typer(qa_app, name="qa")

console = Console()

ContextOpt = typer.Option([], "--context", "-c", help="Context value as key=value (repeatable)")
ContextFileOpt = typer.Option(None, help="JSON file with a top-level 'context' object")


def _handle_errors(fn: Callable) -> Callable:
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except GatekitError as exc:
            console.print(f"[bold red]error:[/bold red] {exc}")
            raise typer.Exit(code=1) from exc

    return wrapper


def _context(pairs: List[str], context_file: Optional[str]) -> AppContext:
    path = Path(context_file).expanduser() if context_file else None
    return load_context(path, parse_context_pairs(pairs))


def _emit(text: str, out: Optional[str], what: str) -> None:
    if out:
        out_path = Path(out).expanduser()
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(text, encoding="utf-8")
        console.print(f"[bold green]Wrote[/bold green] {what} to: {out_path}")
    else:
        typer.echo(text)


@app.callback()
def main_callback(
    log_level: Optional[str] = typer.Option(None, help="Log level (default: $LOG_LEVEL or INFO)"),
) -> None:
    configure_logging(log_level)


@synth_app.command("service")
@_handle_errors
def synth_service(
    context: List[str] = ContextOpt,
    context_file: Optional[str] = ContextFileOpt,
    out: Optional[str] = typer.Option(None, help="Output path (default: print to stdout)"),
) -> None:
    ctx = _context(context, context_file)
    topology = build_service_topology(ctx)
    template = render_service_template(topology)
    _emit(json.dumps(template, indent=2, sort_keys=True), out, f"{ctx.resolved_service_stack_name} template")


@synth_app.command("pipeline")
@_handle_errors
def synth_pipeline(
    context: List[str] = ContextOpt,
    context_file: Optional[str] = ContextFileOpt,
    out: Optional[str] = typer.Option(None, help="Output path (default: print to stdout)"),
) -> None:
    ctx = _context(context, context_file)
    plan = build_pipeline_plan(ctx)
    template = render_pipeline_template(plan, pipeline_settings(ctx), tags=ctx.tags())
    _emit(json.dumps(template, indent=2, sort_keys=True), out, f"{ctx.resolved_pipeline_stack_name} template")


@synth_app.command("app")
@_handle_errors
def synth_cdk_app(
    context: List[str] = ContextOpt,
    context_file: Optional[str] = ContextFileOpt,
    stack: List[str] = typer.Option([], "--stack", help="service|pipeline (repeatable, default: both)"),
    outdir: Optional[str] = typer.Option(None, help="Cloud assembly directory (default: $CDK_OUTDIR)"),
) -> None:
    """Synthesize the cloud assembly; used as the --app command of the cdk CLI."""
    ctx = _context(context, context_file)
    cdk_app = build_app(ctx, stacks=tuple(stack) or (SERVICE_STACK, PIPELINE_STACK), outdir=outdir)
    assembly = cdk_app.synth()
    console.print(f"[bold green]Synthesized[/bold green] {len(assembly.stacks)} stack(s) to: {assembly.directory}")


@routes_app.command("list")
@_handle_errors
def routes_list(
    context: List[str] = ContextOpt,
    context_file: Optional[str] = ContextFileOpt,
    format: str = typer.Option("table", help="Output format: table|json"),
) -> None:
    ctx = _context(context, context_file)
    topology = build_service_topology(ctx)

    rows = [
        {
            "method": b.descriptor.method,
            "path": b.descriptor.path,
            "function": b.descriptor.function,
            "authorizer": topology.arena.get(b.authorizer).label if b.authorizer else None,
            "path_params": b.required_path_parameters,
        }
        for b in topology.bindings
    ]

    console.print(f"[bold]Stack:[/bold] {ctx.resolved_service_stack_name} (profile={ctx.profile.value})")
    console.print(f"[bold]Bindings:[/bold] {len(rows)}")

    if format.lower() == "json":
        console.print(json.dumps(rows, indent=2))
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("METHOD", no_wrap=True)
    table.add_column("PATH")
    table.add_column("FUNCTION")
    table.add_column("AUTH", no_wrap=True)
    table.add_column("PATH PARAMS", no_wrap=True)

    for r in rows:
        table.add_row(
            r["method"],
            r["path"],
            r["function"],
            r["authorizer"] or "-",
            ",".join(r["path_params"]) or "-",
        )

    console.print(table)


@graph_app.command("export")
@_handle_errors
def graph_export(
    context: List[str] = ContextOpt,
    context_file: Optional[str] = ContextFileOpt,
    format: str = typer.Option("json", help="Export format: json|dot"),
    out: Optional[str] = typer.Option(None, help="Output path (default: print to stdout)"),
) -> None:
    fmt = format.lower().strip()
    if fmt not in ("json", "dot"):
        raise typer.BadParameter("format must be one of: json, dot")

    ctx = _context(context, context_file)
    g = build_service_topology(ctx).arena

    if fmt == "json":
        payload = {
            "stack": ctx.resolved_service_stack_name,
            "nodes": [
                {"id": n.id, "type": n.type, "label": n.label}
                for n in sorted(g.nodes.values(), key=lambda x: (x.type, x.id))
            ],
            "edges": [
                {"src": e.src, "dst": e.dst, "type": e.type}
                for e in sorted(g.edges, key=lambda e: (e.type, e.src, e.dst))
            ],
        }
        text = json.dumps(payload, indent=2)
    else:
        lines = []
        lines.append("digraph gatekit {")
        lines.append('  rankdir="LR";')
        lines.append('  node [shape="box"];')

        for node in sorted(g.nodes.values(), key=lambda x: (x.type, x.id)):
            label = node.label.replace('"', '\\"')
            lines.append(f'  "{node.id}" [label="{label}"];')

        for e in sorted(g.edges, key=lambda e: (e.type, e.src, e.dst)):
            lines.append(f'  "{e.src}" -> "{e.dst}" [label="{e.type}"];')

        lines.append("}")
        text = "\n".join(lines)

    _emit(text, out, f"{fmt} graph")


@pipeline_app.command("plan")
@_handle_errors
def pipeline_plan(
    context: List[str] = ContextOpt,
    context_file: Optional[str] = ContextFileOpt,
) -> None:
    ctx = _context(context, context_file)
    plan = build_pipeline_plan(ctx)

    table = Table(show_header=True, header_style="bold")
    table.add_column("#", no_wrap=True)
    table.add_column("STAGE", no_wrap=True)
    table.add_column("INPUTS")
    table.add_column("OUTPUTS")
    table.add_column("RUNS ON", no_wrap=True)
    for s in plan.stages:
        table.add_row(
            str(s.ordinal),
            s.name,
            ", ".join(sorted(s.inputs)) or "-",
            ", ".join(sorted(s.outputs)) or "-",
            "/".join(s.runs_on),
        )
    console.print(f"[bold]Pipeline:[/bold] {ctx.resolved_pipeline_stack_name}")
    console.print(table)

    skipped = [name for name, included in plan.inclusion.items() if not included]
    if skipped:
        console.print(f"Skipped: {', '.join(skipped)}")


@pipeline_app.command("run")
@_handle_errors
def pipeline_run(
    context: List[str] = ContextOpt,
    context_file: Optional[str] = ContextFileOpt,
    workdir: str = typer.Option(".", help="Directory the stage commands run in"),
    region: Optional[str] = typer.Option(None, help="Region of the parameter store"),
) -> None:
    ctx = _context(context, context_file)
    plan = build_pipeline_plan(ctx)
    executor = LocalExecutor(
        SsmParameterStore(region=region), qa_config(ctx), cwd=Path(workdir).expanduser().resolve()
    )
    run = PipelineRunner(plan, executor).run()

    for r in run.results:
        mark = "[green]ok[/green]" if r.succeeded else f"[red]exit {r.exit_code}[/red]"
        console.print(f"  {r.stage:<14} {mark}")
    console.print(f"Pipeline: [bold]{run.status.value}[/bold]")
    run.raise_for_status()


@qa_app.command("run")
@_handle_errors
def qa_run(
    context: List[str] = ContextOpt,
    context_file: Optional[str] = ContextFileOpt,
    region: Optional[str] = typer.Option(None, help="Region of the parameter store"),
) -> None:
    ctx = _context(context, context_file)
    cfg = qa_config(ctx)
    result = run_contract_tests(cfg, SsmParameterStore(region=region))
    console.print(f"Contract tests against {result.url}: {'passed' if result.passed else 'FAILED'}")
    result.raise_for_status()


def main() -> None:
    app()


if __name__ == "__main__":
    main()
