from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Literal, Optional

from pydantic import BaseModel, Field

from abtrial.config import AppSettings, configure_logging, get_settings
from abtrial.exceptions import AbTrialError
from abtrial.experiments import ExperimentCatalog, ExperimentStore
from abtrial.maintenance import run_cleanup
from abtrial.metastore import Metastore, ZkConnectionManager

LogLevel = Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"]


class CommandLineError(AbTrialError): ...


class _Common(BaseModel):
    config_file: Optional[str] = Field(None, description="Optional config file (toml/yaml).")
    loglevel: Optional[LogLevel] = Field(None, description="Logging level override.")


class ExperimentsCommand(_Common):
    pass


class ApplyScoreCommand(_Common):
    score: str = Field(description="Score name.")
    label: str = Field(description="Label the delayed score was staged under.")


class WinnerCommand(_Common):
    experiment: str = Field(description="Experiment name.")
    alternative: Optional[str] = Field(None, description="Alternative to declare winner; omit to clear the winner.")


class CleanupCommand(_Common):
    visitors: bool = Field(True, description="Also purge idle visitor records.")


def _settings(command: _Common) -> AppSettings:
    overrides: dict[str, object] = {}
    if command.loglevel is not None:
        overrides["logging"] = {"level": command.loglevel}
    settings = get_settings(config_file=command.config_file, **overrides)
    configure_logging(settings.logging)
    return settings


@contextmanager
def _open_store(settings: AppSettings) -> Iterator[ExperimentStore]:
    connection = ZkConnectionManager(settings.zookeeper)
    connection.start()
    try:
        metastore = Metastore(connection=connection, group=settings.zookeeper.default_group)
        yield ExperimentStore(metastore, start_manually=settings.trials.start_manually)
    finally:
        connection.stop()


def handle_experiments(command: ExperimentsCommand) -> list[str]:
    settings = _settings(command)
    lines: list[str] = []
    with _open_store(settings) as store:
        catalog = ExperimentCatalog(store, settings.experiments)
        for experiment in catalog.all_active_first():
            status = f"winner={experiment.winner}" if experiment.has_winner else "running"
            if experiment.start_time is None:
                status = "not started"
            lines.append(f"{experiment.key}  [{status}]")
            for stats in store.alternative_stats(experiment):
                lines.append(
                    f"  {stats.name:<20} participants={stats.participants:<8} "
                    f"completed={stats.completed:<8} rate={stats.conversion_rate():.3f}"
                )
    for line in lines:
        print(line)
    return lines


def handle_apply_score(command: ApplyScoreCommand) -> int:
    settings = _settings(command)
    with _open_store(settings) as store:
        applied = store.apply_delayed_score(command.score, command.label)
    print(f"applied {applied} entries of {command.score}/{command.label}")
    return applied


def handle_winner(command: WinnerCommand) -> None:
    settings = _settings(command)
    with _open_store(settings) as store:
        experiment = ExperimentCatalog(store, settings.experiments).find(command.experiment)
        if experiment is None:
            raise CommandLineError(f"Unknown experiment {command.experiment!r}")
        if command.alternative is None:
            store.reset_winner(experiment)
        else:
            store.set_winner(experiment, command.alternative)


def handle_cleanup(command: CleanupCommand) -> None:
    settings = _settings(command)
    with _open_store(settings) as store:
        if command.visitors:
            report = run_cleanup(store.metastore, store, expire_seconds=settings.trials.user_expire_seconds)
            print(f"removed {report.delayed_scores} delayed score records, {report.visitors} visitors")
        else:
            purged = store.purge_expired_delayed_scores()
            print(f"removed {purged} delayed score records")
