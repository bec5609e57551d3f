from __future__ import annotations

import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

import click


IMAGE_NAME = "streamline"
DEFAULT_IMAGE_TAG = "latest"
DEFAULT_SHELL_COMMAND = ("/bin/bash",)
CONTAINER_TARGETS_PATH = "/home/user/targets"
DEFAULT_SOURCE_REF = "main"
INTERACTIVE_FLAGS = ("-i",)
INTERACTIVE_TTY_FLAGS = ("-i", "-t")


class LauncherError(click.ClickException):
    """Operator-facing failure, printed with the error marker instead of click's "Error:"."""

    def show(self, file=None) -> None:
        click.echo(f"[!] {self.format_message()}", file=file, err=file is None)


@dataclass(frozen=True)
class InvocationRequest:
    target_directory: str | Path
    image_tag: str = DEFAULT_IMAGE_TAG
    command: tuple[str, ...] = ()


@dataclass(frozen=True)
class LaunchPlan:
    image_reference: str
    mount_source: Path
    mount_target: str
    interactive_flags: tuple[str, ...]
    command: tuple[str, ...]

    @property
    def mount_spec(self) -> str:
        return ",".join(
            [
                "type=bind",
                _mount_field("source", str(self.mount_source)),
                _mount_field("target", self.mount_target),
            ]
        )

    def docker_command(self, docker: str = "docker") -> list[str]:
        return [
            docker,
            "run",
            *self.interactive_flags,
            "--mount",
            self.mount_spec,
            self.image_reference,
            *self.command,
        ]


@dataclass(frozen=True)
class BuildPlan:
    image_reference: str
    context: Path
    dockerfile: Path
    build_args: tuple[str, ...] = ()

    def docker_command(self, docker: str = "docker") -> list[str]:
        cmd = [docker, "build", "-f", str(self.dockerfile), "-t", self.image_reference]
        for build_arg in self.build_args:
            cmd.extend(["--build-arg", build_arg])
        cmd.append(str(self.context))
        return cmd


def image_reference(tag: str) -> str:
    return f"{IMAGE_NAME}:{tag}"


def _mount_field(key: str, value: str) -> str:
    # docker parses --mount as a CSV record; quote values that would split it.
    if "," in value or '"' in value:
        escaped = value.replace('"', '""')
        return f'"{key}={escaped}"'
    return f"{key}={value}"


def interactive_flags(stdin_is_terminal: bool) -> tuple[str, ...]:
    """Terminal-attached stdin gets a pseudo-terminal; pipes and files get plain ``-i``."""
    return INTERACTIVE_TTY_FLAGS if stdin_is_terminal else INTERACTIVE_FLAGS


def resolve_command(command: Iterable[str]) -> tuple[str, ...]:
    tokens = tuple(str(token) for token in command)
    return tokens or DEFAULT_SHELL_COMMAND


def format_command(command: Iterable[str]) -> str:
    return shlex.join(list(command))


def validate_target_directory(raw_path: str | Path) -> Path:
    """Return the canonical absolute path of an existing directory.

    Symlinks are followed so the mount source is the real directory no
    matter which cwd or link the operator came in through. The path is
    taken literally; a leading ``~`` is not expanded again.
    """
    path = Path(raw_path)
    if not path.is_dir():
        raise LauncherError(f"Directory '{raw_path}' does not exist")
    try:
        return path.resolve(strict=True)
    except (OSError, RuntimeError) as exc:
        raise LauncherError(f"Directory '{raw_path}' does not exist") from exc


def resolve_launch_plan(request: InvocationRequest, *, stdin_is_terminal: bool) -> LaunchPlan:
    return LaunchPlan(
        image_reference=image_reference(request.image_tag),
        mount_source=validate_target_directory(request.target_directory),
        mount_target=CONTAINER_TARGETS_PATH,
        interactive_flags=interactive_flags(stdin_is_terminal),
        command=resolve_command(request.command),
    )


def resolve_build_plan(
    tag: str,
    *,
    default_dockerfile: Path,
    context: str | Path | None = None,
    dockerfile: str | Path | None = None,
    source_repo: str | None = None,
    source_ref: str = DEFAULT_SOURCE_REF,
) -> BuildPlan:
    """Work out what ``docker build`` needs for one image.

    The streamline sources come either from ``context`` (a checkout with a
    ``Cargo.toml`` at its root) or from ``source_repo``, which the image
    clones at ``source_ref``. With neither there is nothing to build.
    """
    build_args: tuple[str, ...] = ()
    if source_repo:
        build_args = (f"STREAMLINE_REPO={source_repo}", f"STREAMLINE_REF={source_ref}")

    if context is not None:
        context_path = Path(context)
        if not context_path.is_dir():
            raise LauncherError(f"Build context '{context}' does not exist")
        context_path = context_path.resolve()
        if not source_repo and not (context_path / "Cargo.toml").is_file():
            raise LauncherError(
                f"Build context '{context}' has no Cargo.toml; "
                "point --context at a streamline checkout or pass --source-repo"
            )
    elif source_repo:
        context_path = Path(default_dockerfile).resolve().parent
    else:
        raise LauncherError("No streamline sources given; pass --context <checkout> or --source-repo <git url>")

    if dockerfile is None:
        dockerfile_path = Path(default_dockerfile)
    else:
        dockerfile_path = Path(dockerfile)
        if not dockerfile_path.is_absolute():
            dockerfile_path = context_path / dockerfile_path
    if not dockerfile_path.is_file():
        raise LauncherError(f"Dockerfile '{dockerfile_path}' does not exist")

    return BuildPlan(
        image_reference=image_reference(tag),
        context=context_path,
        dockerfile=dockerfile_path.resolve(),
        build_args=build_args,
    )
