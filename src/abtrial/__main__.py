# src/abtrial/__main__.py
from __future__ import annotations

import argparse
from typing import Any, Callable

from pydantic import BaseModel

from abtrial.cli.argparse_model import add_model_to_parser
from abtrial.cli.commands import (
    ApplyScoreCommand,
    CleanupCommand,
    ExperimentsCommand,
    WinnerCommand,
    handle_apply_score,
    handle_cleanup,
    handle_experiments,
    handle_winner,
)


def _commands() -> dict[str, tuple[type[BaseModel], Callable[[Any], Any], str]]:
    # Looked up at call time so tests can patch the handlers on this module.
    return {
        "experiments": (ExperimentsCommand, handle_experiments, "List experiments, running ones first."),
        "apply-score": (ApplyScoreCommand, handle_apply_score, "Apply a staged delayed score."),
        "winner": (WinnerCommand, handle_winner, "Declare or clear an experiment winner."),
        "cleanup": (CleanupCommand, handle_cleanup, "Purge expired delayed scores and idle visitors."),
    }


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="abtrial")
    sub = parser.add_subparsers(dest="command", required=True)

    commands = _commands()
    for name, (model, _handler, help_text) in commands.items():
        add_model_to_parser(sub.add_parser(name, help=help_text), model)

    ns = parser.parse_args(argv)
    data = vars(ns)
    command_name = data.pop("command")
    model, handler, _help = commands[command_name]
    handler(model.model_validate(data))


if __name__ == "__main__":
    main()
