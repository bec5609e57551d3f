from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import sys
from importlib import resources
from typing import Any, Iterable

import click
from click.core import ParameterSource

from streamline_cli.launch import (
    CONTAINER_TARGETS_PATH,
    DEFAULT_IMAGE_TAG,
    DEFAULT_SOURCE_REF,
    InvocationRequest,
    LauncherError,
    format_command,
    resolve_build_plan,
    resolve_launch_plan,
)


LOG_LEVEL_CHOICES = ("debug", "info", "warning", "error")
DEFAULT_LOG_LEVEL = "warning"
IMAGE_TAG_ENV = "STREAMLINE_IMAGE_TAG"
LOG_LEVEL_ENV = "STREAMLINE_LOG_LEVEL"
SOURCE_DIR_ENV = "STREAMLINE_SOURCE_DIR"
SOURCE_REPO_ENV = "STREAMLINE_SOURCE_REPO"
SOURCE_REF_ENV = "STREAMLINE_SOURCE_REF"
INTERRUPTED_EXIT_CODE = 128 + signal.SIGINT

LOGGER = logging.getLogger("streamline_cli")
LOGGER.addHandler(logging.NullHandler())


def _normalize_log_level(value: Any) -> str:
    normalized = str(value or "").strip().lower()
    if normalized in LOG_LEVEL_CHOICES:
        return normalized
    return DEFAULT_LOG_LEVEL


def _configure_logging(level: str) -> None:
    normalized = _normalize_log_level(level)
    handler = logging.StreamHandler(sys.__stderr__)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    LOGGER.handlers.clear()
    LOGGER.addHandler(handler)
    LOGGER.setLevel(getattr(logging, normalized.upper(), logging.WARNING))
    LOGGER.propagate = False


def _bundled_dockerfile() -> resources.abc.Traversable:
    return resources.files("streamline_cli") / "docker" / "Dockerfile"


def _stdin_is_terminal() -> bool:
    stream = sys.stdin
    if stream is None:
        return False
    try:
        return stream.isatty()
    except (ValueError, OSError):
        # Closed descriptor.
        return False


def _require_docker() -> None:
    if shutil.which("docker") is None:
        raise LauncherError("docker command not found in PATH")


def _exit_status(returncode: int) -> int:
    if returncode < 0:
        return 128 - returncode
    return returncode


def _run(cmd: Iterable[str]) -> int:
    args = list(cmd)
    LOGGER.debug("Running: %s", format_command(args))
    try:
        result = subprocess.run(args, check=False)
    except KeyboardInterrupt:
        LOGGER.debug("Interrupted while waiting for %s", args[0])
        return INTERRUPTED_EXIT_CODE
    except OSError as exc:
        raise LauncherError(f"Unable to execute {args[0]}: {exc}") from exc
    LOGGER.debug("%s exited with status %d", args[0], result.returncode)
    return _exit_status(result.returncode)


def _tag_was_supplied(ctx: click.Context, name: str) -> bool:
    return ctx.get_parameter_source(name) in {ParameterSource.COMMANDLINE, ParameterSource.ENVIRONMENT}


class LauncherCommand(click.Command):
    """Honour ``-h`` anywhere before the targets directory, ahead of click's own option errors."""

    value_options = frozenset({"-t", "--tag", "--log-level"})

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        expects_value = False
        for arg in args:
            if expects_value:
                expects_value = False
                continue
            if arg == "--" or not arg.startswith("-"):
                break
            if arg in ctx.help_option_names and not ctx.resilient_parsing:
                click.echo(ctx.get_help(), color=ctx.color)
                ctx.exit(0)
            expects_value = arg in self.value_options
        return super().parse_args(ctx, args)


log_level_option = click.option(
    "--log-level",
    default=os.environ.get(LOG_LEVEL_ENV, DEFAULT_LOG_LEVEL),
    show_default=True,
    type=click.Choice(LOG_LEVEL_CHOICES, case_sensitive=False),
    help="Diagnostic logging verbosity.",
)


@click.command(
    cls=LauncherCommand,
    help=(
        f"Run the streamline image with <targets_dir> mounted at {CONTAINER_TARGETS_PATH}. "
        "Everything after <targets_dir> is the command executed in the container "
        "(default: an interactive shell)."
    ),
    context_settings={
        "help_option_names": ["-h", "--help"],
        "allow_interspersed_args": False,
    },
)
@click.option(
    "-t",
    "--tag",
    "image_tag",
    default=DEFAULT_IMAGE_TAG,
    show_default=True,
    envvar=IMAGE_TAG_ENV,
    metavar="<tag>",
    help="Use the streamline image with this tag.",
)
@log_level_option
@click.argument("targets_dir", required=False, metavar="<targets_dir>")
@click.argument("command", nargs=-1, type=click.UNPROCESSED, metavar="[<cmd>...]")
@click.pass_context
def main(
    ctx: click.Context,
    image_tag: str,
    log_level: str,
    targets_dir: str | None,
    command: tuple[str, ...],
) -> None:
    _configure_logging(log_level)

    if _tag_was_supplied(ctx, "image_tag"):
        click.echo(f"[*] Using streamline image with tag: {image_tag}")

    if not targets_dir:
        click.echo("[!] No <targets_dir> specified", err=True)
        click.echo(ctx.get_usage(), err=True)
        ctx.exit(1)

    request = InvocationRequest(
        target_directory=targets_dir,
        image_tag=image_tag,
        command=tuple(command),
    )
    plan = resolve_launch_plan(request, stdin_is_terminal=_stdin_is_terminal())
    LOGGER.debug("Resolved launch plan: %s", plan)

    if not request.command:
        click.echo(f"[*] No <cmd> specified. Defaulting to '{format_command(plan.command)}'")

    click.echo(f"[+] Mapping local directory '{plan.mount_source}' into container")
    click.echo(f"[+] Executing command: '{format_command(plan.command)}'")
    click.echo(f"[+] Running docker with '{' '.join(plan.interactive_flags)}'")

    _require_docker()
    ctx.exit(_run(plan.docker_command()))


@click.command(
    help=(
        "Build the streamline image, tagged streamline:<tag> (default: latest), "
        "from a streamline checkout (--context) or a git repository (--source-repo)."
    ),
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.option(
    "--context",
    "context_dir",
    default=None,
    envvar=SOURCE_DIR_ENV,
    help="Docker build context: a streamline checkout with Cargo.toml at its root.",
)
@click.option(
    "--source-repo",
    default=None,
    envvar=SOURCE_REPO_ENV,
    help="Git URL the image clones the streamline sources from instead of the context.",
)
@click.option(
    "--source-ref",
    default=DEFAULT_SOURCE_REF,
    show_default=True,
    envvar=SOURCE_REF_ENV,
    help="Branch or tag checked out from --source-repo.",
)
@click.option(
    "--dockerfile",
    default=None,
    help="Dockerfile, relative to the build context or absolute (default: the bundled one).",
)
@log_level_option
@click.argument("tag", required=False, envvar=IMAGE_TAG_ENV, metavar="[<tag>]")
@click.pass_context
def build(
    ctx: click.Context,
    context_dir: str | None,
    source_repo: str | None,
    source_ref: str,
    dockerfile: str | None,
    log_level: str,
    tag: str | None,
) -> None:
    _configure_logging(log_level)

    if tag:
        click.echo(f"[*] Building streamline image with tag: {tag}")
    else:
        click.echo("[*] No tag specified, building default streamline image")
        tag = DEFAULT_IMAGE_TAG

    with resources.as_file(_bundled_dockerfile()) as bundled_dockerfile:
        plan = resolve_build_plan(
            tag,
            default_dockerfile=bundled_dockerfile,
            context=context_dir,
            dockerfile=dockerfile,
            source_repo=source_repo,
            source_ref=source_ref,
        )
        LOGGER.debug("Resolved build plan: %s", plan)

        _require_docker()
        returncode = _run(plan.docker_command())

    if returncode == 0:
        click.echo(f"[+] Built image '{plan.image_reference}'")
    else:
        click.echo(f"[!] docker build failed with exit code {returncode}", err=True)
    ctx.exit(returncode)


if __name__ == "__main__":
    main()
