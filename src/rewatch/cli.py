from __future__ import annotations

import asyncio
from pathlib import Path
from time import monotonic
from typing import List, Optional

import typer.rich_utils as ru
from click.exceptions import Exit
from pydantic import ValidationError
from rich.console import Console
from rich.json import JSON
from rich.panel import Panel
from rich.style import Style
from rich.text import Text
from typer import Argument, Option, Typer

from rewatch.config import Config
from rewatch.errors import KillError
from rewatch.orchestrator import Orchestrator
from rewatch.registry import Registry

ru.STYLE_HELPTEXT = ""

cli = Typer(pretty_exceptions_enable=False)

CONFIG_FILE_NAMES = ("rewatch.yaml", "rewatch.yml")


@cli.command()
def run(
    rules: Optional[List[str]] = Argument(
        default=None,
        help="The rules to run. Defaults to all of the rules in the configuration file.",
        show_default=False,
    ),
    config: Optional[Path] = Option(
        default=None,
        exists=True,
        readable=True,
        show_default=True,
        envvar="REWATCHFILE",
        help="The path to the configuration file to execute.",
    ),
    dry: bool = Option(
        default=False,
        help="If enabled, print the configuration and do not actually watch anything.",
    ),
) -> None:
    start_time = monotonic()

    console = Console()

    config = config or find_config_file(console)

    try:
        parsed_config = Config.from_file(config)
    except ValidationError as e:
        for err in e.errors():
            loc = ".".join(map(str, err["loc"]))
            msg = err["msg"]
            console.print(f"[red]ERROR[/red] {loc} -> {msg}")
        raise Exit(code=1)

    if dry:
        console.print(
            Panel(
                JSON(parsed_config.model_dump_json(exclude_unset=True)),
                title="Configuration",
                title_align="left",
            )
        )

    selected = rules or list(parsed_config.rules)

    unknown = [r for r in selected if r not in parsed_config.rules]
    if unknown:
        sep = "\n  "
        available_rules = sep + sep.join(parsed_config.rules.keys())
        console.print(
            Text(
                f"No rule named '{unknown[0]}'. Available rules:{available_rules}",
                style=Style(color="red"),
            )
        )
        raise Exit(code=1)

    if dry:
        return

    registry = Registry.from_config(parsed_config, names=selected)
    controller = Orchestrator(registry=registry, console=console)

    try:
        asyncio.run(controller.run())
    except KillError as e:
        console.print(Text(str(e), style=Style(color="red")))
        raise Exit(code=1)
    except KeyboardInterrupt:
        raise Exit(code=0)
    finally:
        end_time = monotonic()

        console.print(Text(f"Finished in {end_time - start_time:.3f} seconds."))


def find_config_file(console: Console) -> Path:
    cwd = Path.cwd()
    for dir in (cwd, *cwd.parents):
        contents = set(dir.iterdir())
        for name in CONFIG_FILE_NAMES:
            if (path := dir / name) in contents:
                return path

        if dir / ".git" in contents:
            break

    console.print(Text("Failed to find a rewatch config file", style=Style(color="red")))
    raise Exit(code=1)
