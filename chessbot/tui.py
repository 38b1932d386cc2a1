"""Terminal chess board for the session controller.

Renders the controller's board view with Rich (square styles, arrows,
orientation) next to a sidebar of tabs, moves and analysis, and runs an
interactive command loop against Stockfish.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import re
import shlex
import sys
from pathlib import Path

import chess
from rich.console import Console
from rich.layout import Layout
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from chessbot.config import Config
from chessbot.controller import SessionController
from chessbot.engine import StockfishBackend
from chessbot.store import FileStore

logger = logging.getLogger(__name__)

# Unicode piece symbols
_PIECE_SYMBOLS = {
    "K": "♔", "Q": "♕", "R": "♖", "B": "♗",
    "N": "♘", "P": "♙",
    "k": "♚", "q": "♛", "r": "♜", "b": "♝",
    "n": "♞", "p": "♟",
}

_LIGHT_SQ = "grey85"
_DARK_SQ = "grey50"

_STYLE_COLORS = {
    "last-move": "yellow",
    "check": "red3",
    "selected": "gold1",
    "move": "pale_green3",
    "capture": "indian_red",
}

_SQUARE_RE = re.compile(r"^[a-h][1-8]$")
_MOVE_RE = re.compile(r"^([a-h][1-8])([a-h][1-8])([qrbn])?$")

_HELP = """\
Commands:
  e2            select / move via clicks     e2e4[q]   drag-and-drop move
  undo | new | flip | hint | analyze | bot   start white|black
  fen <FEN>     load position                pgn <file>  load game
  set key=value ...  change settings         tab new|close|switch|rename ...
  save [name] | saves | load <id> | delete <id> | export <file> | import <file>
  autosave load [tab] | autosave clear [tab|all]
  help | quit"""


def render(controller: SessionController) -> Layout:
    """Render the full screen for the active tab.

    Args:
        controller: Session controller to draw.

    Returns:
        Rich Layout with board and sidebar.
    """
    layout = Layout()
    layout.split_row(
        Layout(name="board", ratio=2),
        Layout(name="sidebar", ratio=1),
    )
    layout["board"].update(render_board(controller))
    layout["sidebar"].update(_render_sidebar(controller))
    return layout


def render_board(controller: SessionController) -> Panel:
    """Render the chess board as a Rich Panel.

    Args:
        controller: Session controller whose board view is drawn.

    Returns:
        Panel containing the board.
    """
    view = controller.board_view()
    board = chess.Board(view.fen)
    is_flipped = view.orientation == "black"

    table = Table(show_header=False, show_edge=False, pad_edge=False,
                  box=None, padding=(0, 1))

    # Add columns: rank label + 8 squares
    table.add_column(width=2, justify="right")
    for _ in range(8):
        table.add_column(width=3, justify="center")

    ranks = range(8) if is_flipped else range(7, -1, -1)
    files = range(7, -1, -1) if is_flipped else range(8)

    for rank in ranks:
        row: list[Text] = [Text(str(rank + 1), style="bold")]
        for file in files:
            sq = chess.square(file, rank)
            name = chess.square_name(sq)
            piece = board.piece_at(sq)

            is_light = (rank + file) % 2 == 1
            bg = _LIGHT_SQ if is_light else _DARK_SQ
            style = view.square_styles.get(name)
            if style is not None:
                bg = _STYLE_COLORS.get(style, bg)

            if piece is not None:
                symbol = _PIECE_SYMBOLS.get(piece.symbol(), "?")
                cell = Text(f" {symbol} ", style=f"on {bg}")
            elif style == "move":
                cell = Text(" · ", style=f"on {bg}")
            else:
                cell = Text("   ", style=f"on {bg}")

            row.append(cell)

        table.add_row(*row)

    # File labels
    file_labels = [Text("  ")]
    for f in files:
        file_labels.append(Text(f" {chr(ord('a') + f)} ", style="bold"))
    table.add_row(*file_labels)

    status = controller.status
    title = controller.active.name
    if status.game_over:
        title = f"{title}: {status.describe()} {board.result(claim_draw=True)}"
    elif status.check:
        title = f"{title}: check"

    subtitle = None
    if view.arrows:
        subtitle = "  ".join(f"{a.from_square}→{a.to_square}" for a in view.arrows)

    return Panel(table, title=title, subtitle=subtitle, border_style="blue")


def _render_sidebar(controller: SessionController) -> Panel:
    """Render tabs, moves, analysis and settings."""
    parts: list[str] = []
    active_id = controller.tabs.active_id

    parts.append("[bold]Tabs:[/bold]")
    for pos, tab in enumerate(controller.tabs.list(), 1):
        marker = "▶" if tab.id == active_id else " "
        parts.append(f" {marker} {pos}. {tab.name}")
    parts.append("")

    history = controller.position.history
    if history:
        parts.append("[bold]Moves:[/bold]")
        sans = [m.san for m in history]
        for i in range(0, len(sans), 2):
            move_num = i // 2 + 1
            black_move = sans[i + 1] if i + 1 < len(sans) else ""
            parts.append(f"  {move_num}. {sans[i]} {black_move}")
        parts.append("")

    analysis = controller.analysis
    if analysis is not None:
        parts.append(f"[bold]Eval:[/bold] {analysis.display()}")
        if analysis.best_move_san:
            parts.append(f"  Best: {analysis.best_move_san}")
    if controller.hint:
        parts.append(f"[bold]Hint:[/bold] {controller.hint}")
    if controller.is_thinking:
        parts.append("[italic]Engine thinking...[/italic]")
    if controller.engine_error:
        parts.append(f"[red]{controller.engine_error}[/red]")
    if controller.store_error:
        parts.append(f"[red]{controller.store_error}[/red]")
    parts.append("")

    settings = controller.settings
    parts.append(f"Mode: {settings.mode}")
    parts.append(f"Human: {settings.human_color}  AI: {settings.ai_color}")
    parts.append(f"Depth: {settings.ai_depth}")
    if settings.analysis_mode:
        parts.append("[blue]ANALYSIS MODE[/blue]")

    return Panel("\n".join(parts), title="Info", border_style="green")


def _parse_value(raw: str) -> object:
    lowered = raw.lower()
    if lowered in ("true", "on", "yes"):
        return True
    if lowered in ("false", "off", "no"):
        return False
    try:
        return int(raw)
    except ValueError:
        return raw


def _tab_id(controller: SessionController, ref: str) -> str:
    """Resolve a 1-based tab position or a tab id."""
    tabs = controller.tabs.list()
    if ref.isdigit() and 1 <= int(ref) <= len(tabs):
        return tabs[int(ref) - 1].id
    return ref


async def handle_command(controller: SessionController, line: str, console: Console) -> bool:
    """Run one command line. Returns False when the user quits."""
    try:
        words = shlex.split(line)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        return True
    if not words:
        return True
    cmd, args = words[0].lower(), words[1:]
    move = _MOVE_RE.match(cmd)

    if cmd in ("quit", "exit", "q"):
        return False
    if cmd == "help":
        console.print(_HELP)
    elif _SQUARE_RE.match(cmd) and not args:
        outcome = controller.square_clicked(cmd)
        console.print(f"[dim]{outcome.value}[/dim]")
    elif move and not args:
        if not controller.piece_dropped(move.group(1), move.group(2), move.group(3)):
            console.print("[red]Illegal move[/red]")
    elif cmd == "undo":
        if not controller.undo():
            console.print("Nothing to undo")
    elif cmd == "new":
        controller.new_game()
    elif cmd == "start" and args:
        controller.start_as(args[0])
    elif cmd == "flip":
        controller.flip_board()
    elif cmd == "hint":
        hint = await controller.get_hint()
        console.print(f"Hint: {hint}" if hint else "No hint available")
    elif cmd == "analyze":
        result = await controller.analyze_position()
        console.print(f"Eval: {result.display()}" if result else "Analysis unavailable")
    elif cmd == "bot":
        controller.bot_move()
    elif cmd == "fen" and args:
        if not controller.load_fen(" ".join(args)):
            console.print("[red]Invalid FEN[/red]")
    elif cmd == "pgn" and args:
        text = Path(args[0]).read_text(encoding="utf-8")
        if not controller.load_pgn(text):
            console.print("[red]Invalid PGN[/red]")
    elif cmd == "set" and args:
        partial = {}
        for arg in args:
            key, _, value = arg.partition("=")
            partial[key] = _parse_value(value)
        controller.change_settings(partial)
    elif cmd == "tab" and args:
        _tab_command(controller, args)
    elif cmd == "save":
        game = controller.save_game(" ".join(args) or None)
        console.print(f"Saved {game.id}" if game else "[red]Save failed[/red]")
    elif cmd == "saves":
        for game in controller.saved_games():
            console.print(f"{game.id}  {game.name}  ({game.move_count} moves)  {game.timestamp}")
    elif cmd == "load" and args:
        if not controller.load_saved_game(args[0]):
            console.print("[red]No such saved game[/red]")
    elif cmd == "delete" and args:
        controller.delete_saved_game(args[0])
    elif cmd == "autosave" and args:
        _autosave_command(controller, args, console)
    elif cmd == "export" and args:
        blob = controller.export_saved_games()
        if blob is not None:
            Path(args[0]).write_text(blob, encoding="utf-8")
    elif cmd == "import" and args:
        count = controller.import_saved_games(Path(args[0]).read_text(encoding="utf-8"))
        console.print(f"Imported {count}" if count is not None else "[red]Import rejected[/red]")
    else:
        console.print(f"Unknown command: {line}")
    return True


def _tab_command(controller: SessionController, args: list[str]) -> None:
    action = args[0]
    if action == "new":
        controller.new_tab(" ".join(args[1:]) or None)
    elif action == "close" and len(args) > 1:
        controller.close_tab(_tab_id(controller, args[1]))
    elif action == "switch" and len(args) > 1:
        controller.switch_tab(_tab_id(controller, args[1]))
    elif action == "rename" and len(args) > 2:
        controller.rename_tab(_tab_id(controller, args[1]), " ".join(args[2:]))
    else:
        raise ValueError(f"Bad tab command: {' '.join(args)}")


def _autosave_command(controller: SessionController, args: list[str], console: Console) -> None:
    action, rest = args[0], args[1:]
    if action == "load":
        tab_id = _tab_id(controller, rest[0]) if rest else None
        if not controller.load_auto_save(tab_id):
            console.print("[red]No usable auto-save[/red]")
    elif action == "clear":
        if rest and rest[0] == "all":
            controller.clear_auto_saves()
        else:
            controller.clear_auto_saves(
                _tab_id(controller, rest[0]) if rest else controller.active.id
            )
    else:
        raise ValueError(f"Bad autosave command: {' '.join(args)}")


async def _play_loop(console: Console, config: Config) -> None:
    controller = SessionController(
        StockfishBackend(config.stockfish_path),
        FileStore(config.data_dir / "store"),
        config,
    )
    try:
        await controller.settle()
        console.print(render(controller))
        while True:
            line = await asyncio.to_thread(console.input, "[bold]> [/bold]")
            try:
                if not await handle_command(controller, line, console):
                    break
            except (KeyError, ValueError, OSError) as exc:
                console.print(f"[red]{exc}[/red]")
                continue
            await controller.settle()
            console.print(render(controller))
    finally:
        await controller.close()


def main() -> None:
    """CLI entry point for tui.py."""
    parser = argparse.ArgumentParser(description="Play and analyze chess in the terminal")
    parser.add_argument(
        "--data-dir", type=Path, default=None,
        help="Directory for tabs and saved games",
    )
    parser.add_argument("--stockfish", type=str, default=None, help="Stockfish binary")
    args = parser.parse_args()

    try:
        config = Config.from_env()
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    if args.data_dir is not None:
        config.data_dir = args.data_dir
    if args.stockfish is not None:
        config.stockfish_path = args.stockfish

    logging.basicConfig(
        level=config.log_level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True)],
    )

    console = Console()
    console.print(_HELP)
    try:
        asyncio.run(_play_loop(console, config))
    except (KeyboardInterrupt, EOFError):
        pass


if __name__ == "__main__":
    main()
