from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import cv2
import typer
import yaml
from rich import print as rprint
from rich.logging import RichHandler
from rich.table import Table

from .config_io import ScannerConfig, load_config, save_markers
from .errors import GeometryError, ImageDecodeError
from .pixel_buffer import PixelBuffer, load_image
from .scan_core import scan_blank
from .tools.bubble_score import ScanResult
from .tools.scan_aligner import detect_markers, locate_click
from .tools.sheet_layout import Markers, build_layout, option_label
from .visualize_core import create_scan_preview, export_error_report

app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help="blank-scanner: read filled answer blanks from photos.",
)


@app.callback()
def main_options(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log per-question fill ratios and decisions"),
):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(show_path=False, rich_tracebacks=True)],
        force=True,
    )


# ----------------------------- HELPERS -------------------------------
def load_key_txt(path: str) -> List[str]:
    with open(path, "r", encoding="utf-8") as f:
        raw = f.read()
    chars = [c for c in raw if c.isalpha()]
    return [c.upper() for c in chars]


def score_against_key(selections: List[str], key: List[str]) -> Tuple[int, int]:
    correct = 0
    total = min(len(selections), len(key))
    for i in range(total):
        if selections[i] and selections[i] == key[i]:
            correct += 1
    return correct, total


def _parse_markers(text: str) -> Markers:
    try:
        return Markers.from_flat([float(v) for v in text.replace(";", ",").split(",") if v.strip()])
    except ValueError as e:
        rprint(f"[red]Bad --markers value:[/red] {e}")
        raise typer.Exit(code=2)


def _load_cfg(config: Optional[str]) -> ScannerConfig:
    if not config:
        return ScannerConfig()
    try:
        return load_config(config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        rprint(f"[red]Failed to load config {config}:[/red] {e}")
        raise typer.Exit(code=2)


def _load_key(path: str) -> List[str]:
    try:
        return load_key_txt(path)
    except (OSError, UnicodeDecodeError) as e:
        rprint(f"[red]Could not read key file {path}:[/red] {e}")
        raise typer.Exit(code=2)


def _load_buf(image: str) -> PixelBuffer:
    try:
        return load_image(image)
    except ImageDecodeError as e:
        rprint(f"[red]Could not read image:[/red] {e}")
        raise typer.Exit(code=2)


def _pick_markers(buf: PixelBuffer, cfg: ScannerConfig, markers: Optional[str], auto: bool) -> Optional[Markers]:
    if markers:
        return _parse_markers(markers)
    if auto:
        found = detect_markers(buf)
        if found is not None:
            return found
        rprint("[yellow]Corner markers not found; using configured markers or the ratio grid.[/yellow]")
    return cfg.grid_bounds.markers


def _question_count(questions: Optional[int], key: Optional[List[str]], cfg: ScannerConfig) -> int:
    n = questions or (len(key) if key else None) or cfg.questions
    if not n:
        rprint("[red]Give --questions, --key-txt, or 'questions' in the config.[/red]")
        raise typer.Exit(code=2)
    return int(n)


def _print_result(result: ScanResult, key: Optional[List[str]]) -> None:
    table = Table(title=f"confidence {result.confidence:.2f} ({result.method})")
    table.add_column("Q", justify="right")
    table.add_column("answer")
    table.add_column("status")
    table.add_column("fill % A-E")
    if key:
        table.add_column("key")
    letters = result.letters
    for i, (letter, status, fills) in enumerate(zip(letters, result.statuses, result.fill_ratios)):
        style = {"marked": "green", "ambiguous": "red", "blank": "yellow"}.get(status, "")
        row = [str(i + 1), letter or "-", f"[{style}]{status}[/{style}]",
               " ".join(f"{100 * f:3.0f}" for f in fills)]
        if key:
            row.append(key[i] if i < len(key) else "")
        table.add_row(*row)
    rprint(table)
    if result.low_confidence:
        rprint("[yellow]Low confidence:[/yellow] review the preview or enter answers manually.")
    if key:
        got, tot = score_against_key(letters, key)
        rprint(f"[green]Score:[/green] {got}/{tot}")


# ------------------------------- SCAN --------------------------------
@app.command()
def scan(
    image: str = typer.Argument(..., help="Photo or scan of the filled blank"),
    questions: Optional[int] = typer.Option(None, "--questions", "-n", help="Number of questions on the blank"),
    key_txt: Optional[str] = typer.Option(None, "--key-txt", "-k",
        help="Answer key file (A/B/C/D/E). Its length sets the question count if -n is omitted."),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Config file (.yaml/.yml or .json)"),
    markers: Optional[str] = typer.Option(None, "--markers", "-m",
        help="Marker centres as ratios: tl_x,tl_y,tr_x,tr_y,bl_x,bl_y,br_x,br_y"),
    auto_markers: bool = typer.Option(False, "--auto-markers", help="Detect the 4 corner markers automatically"),
    preview: Optional[str] = typer.Option(None, "--preview", "-p", help="Write the overlay preview PNG"),
    out_json: Optional[str] = typer.Option(None, "--json", "-o", help="Write the ScanResult as JSON"),
    report_dir: Optional[str] = typer.Option(None, "--report-dir", help="Write an error-report snapshot here"),
    read_code: bool = typer.Option(False, "--read-code", help="Also read the sheet's QR code"),
):
    """
    Scan one blank and print the detected answers.
    """
    cfg = _load_cfg(config)
    key = _load_key(key_txt) if key_txt else None
    n = _question_count(questions, key, cfg)
    buf = _load_buf(image)
    chosen = _pick_markers(buf, cfg, markers, auto_markers)
    params = cfg.layout_params(n)

    result = scan_blank(buf, chosen, params, cfg.scoring, read_code=read_code)
    if out_json:
        Path(out_json).write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
        rprint(f"[green]Wrote:[/green] {out_json}")

    if not result.success:
        rprint(f"[red]Scan failed:[/red] {result.error}")
        rprint("Recalibrate the markers or retake the photo.")
        raise typer.Exit(code=2)

    if read_code:
        code = result.sheet_code
        rprint(f"[cyan]Sheet code:[/cyan] {code}" if code else "[yellow]No sheet code found[/yellow]")
    _print_result(result, key)

    if preview or report_dir:
        vis = create_scan_preview(buf, result, params, markers=chosen)
        if preview:
            cv2.imwrite(preview, vis)
            rprint(f"[green]Wrote:[/green] {preview}")
        if report_dir:
            png, js = export_error_report(vis, result, report_dir, stem=Path(image).stem)
            rprint(f"[green]Report:[/green] {png}, {js}")


# -------------------------- DETECT-MARKERS ---------------------------
@app.command("detect-markers")
def detect_markers_cmd(
    image: str = typer.Argument(..., help="Photo of the blank"),
    out: Optional[str] = typer.Option(None, "--out", "-o", help="Write markers as a YAML config fragment"),
):
    """
    Find the four printed corner markers and print their normalized centres.
    """
    buf = _load_buf(image)
    found = detect_markers(buf)
    if found is None:
        rprint("[red]Corner markers not found.[/red] Place them manually.")
        raise typer.Exit(code=2)
    for corner, (x, y) in found.to_dict().items():
        rprint(f"{corner}: x={x:.4f} y={y:.4f}")
    flat = ",".join(f"{v:.4f}" for xy in found.to_dict().values() for v in xy)
    rprint(f"[cyan]--markers[/cyan] {flat}")
    if out:
        save_markers(found, out)
        rprint(f"[green]Wrote:[/green] {out}")


# ------------------------------ PREVIEW ------------------------------
@app.command()
def preview(
    image: str = typer.Argument(..., help="Photo of the blank"),
    questions: int = typer.Option(..., "--questions", "-n", help="Number of questions on the blank"),
    out_image: str = typer.Option("scan_preview.png", "--out-image", "-o", help="Output overlay PNG"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Config file (.yaml/.yml or .json)"),
    markers: Optional[str] = typer.Option(None, "--markers", "-m", help="tl_x,tl_y,tr_x,tr_y,bl_x,bl_y,br_x,br_y"),
    auto_markers: bool = typer.Option(False, "--auto-markers", help="Detect the 4 corner markers automatically"),
    max_size: int = typer.Option(800, "--max-size", help="Longer side of the preview in pixels"),
):
    """
    Scan and draw the projected grid with detected marks, to verify calibration.
    """
    cfg = _load_cfg(config)
    buf = _load_buf(image)
    chosen = _pick_markers(buf, cfg, markers, auto_markers)
    params = cfg.layout_params(questions)
    result = scan_blank(buf, chosen, params, cfg.scoring)
    vis = create_scan_preview(buf, result, params, markers=chosen, max_size=max_size)
    cv2.imwrite(out_image, vis)
    rprint(f"[green]Wrote:[/green] {out_image}")
    if not result.success:
        rprint(f"[red]Scan failed:[/red] {result.error}")
        raise typer.Exit(code=2)


# ------------------------------ LOCATE -------------------------------
@app.command()
def locate(
    image: str = typer.Argument(..., help="Photo of the blank"),
    x: float = typer.Argument(..., help="Click x in photo pixels"),
    y: float = typer.Argument(..., help="Click y in photo pixels"),
    questions: int = typer.Option(..., "--questions", "-n", help="Number of questions on the blank"),
    markers: str = typer.Option(..., "--markers", "-m", help="tl_x,tl_y,tr_x,tr_y,bl_x,bl_y,br_x,br_y"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Config file (.yaml/.yml or .json)"),
):
    """
    Report which bubble lies under a photo click (manual correction helper).
    """
    cfg = _load_cfg(config)
    buf = _load_buf(image)
    layout = build_layout(questions, cfg.grid_bounds)
    try:
        cell = locate_click(_parse_markers(markers), buf.size, (x, y), layout)
    except GeometryError as e:
        rprint(f"[red]Calibration markers are unusable:[/red] {e}")
        raise typer.Exit(code=2)
    if cell is None:
        rprint("[yellow]No bubble at that point.[/yellow]")
        raise typer.Exit(code=1)
    q, o = cell
    rprint(f"Q{q + 1} option {option_label(o)}")


# ------------------------------- MAIN --------------------------------
def app_main() -> None:
    """Entry point for console_scripts."""
    try:
        app()
    except KeyboardInterrupt:
        rprint("\n[red]Interrupted[/red]")
        sys.exit(130)


if __name__ == "__main__":
    app_main()
