# src/nanoflow/log.py
from __future__ import annotations

from threading import Lock

import typer

_LOG_LOCK = Lock()
_VERBOSE = True


def set_verbose(flag: bool) -> None:
    global _VERBOSE
    _VERBOSE = bool(flag)


def log(msg: str) -> None:
    if not _VERBOSE:
        return
    with _LOG_LOCK:
        typer.echo(msg)


def log_ok(msg: str) -> None:
    if not _VERBOSE:
        return
    with _LOG_LOCK:
        typer.secho(msg, fg="green")


def log_warn(msg: str) -> None:
    with _LOG_LOCK:
        typer.secho(msg, fg="yellow", err=True)


def log_err(msg: str) -> None:
    with _LOG_LOCK:
        typer.secho(msg, fg="red", err=True)
