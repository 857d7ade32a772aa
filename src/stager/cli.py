# cli.py
from __future__ import annotations

import sys
from pathlib import Path

import click

from stager.buildpack import BuildpackRunner
from stager.errors import StagingError
from stager.fetch import GemFetcher
from stager.gemfile_task import GemfileTask, install_app_gems
from stager.lockfile import LockfileResolver, lockfile_path
from stager.logs import staging_logger
from stager.model import StagingIdentity
from stager.process import SubprocessRunner
from stager.secure import SecureExecutor
from stager.settings import Settings
from stager.ui.console import Console, get_console, set_console


def resolve_identity(settings: Settings, uid: int | None, gid: int | None) -> StagingIdentity | None:
    if uid is not None:
        return StagingIdentity(uid=uid, gid=gid)
    return settings.identity


def _fail(exc: Exception) -> None:
    console = get_console()
    if isinstance(exc, StagingError):
        console.print_staging_error(exc)
    else:
        console.print_exception(exc)
    sys.exit(1)


def _buildpack_runner(ctx: click.Context, app_dir: str, buildpacks: str, uid, gid) -> BuildpackRunner:
    settings: Settings = ctx.obj["settings"]
    logger = staging_logger(app_dir, debug=ctx.obj["debug"])
    return BuildpackRunner(
        buildpacks,
        Path(app_dir).resolve(),
        SecureExecutor(SubprocessRunner(), logger),
        logger,
        identity=resolve_identity(settings, uid, gid),
        cache_dir=settings.bundler_cache_dir,
    )


identity_options = [
    click.option("--uid", default=None, type=int, help="Run untrusted code as this uid (default: $STAGER_UID)"),
    click.option("--gid", default=None, type=int, help="Group for --uid (default: $STAGER_GID)"),
]


def with_identity(fn):
    for opt in reversed(identity_options):
        fn = opt(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (debug staging log and stack traces)",
)
@click.pass_context
def cli(ctx, debug):
    """stager: stage an app into a droplet with build-packs and cached gems."""
    settings = Settings.from_env()
    debug = debug or settings.debug
    set_console(Console(debug=debug))
    get_console().print_debug(f"settings: {settings}")
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = settings


@cli.command()
@click.argument("app_dir", type=click.Path(exists=True, file_okay=False))
@click.option("--buildpacks", required=True, type=click.Path(exists=True, file_okay=False), help="Directory of installed build-packs")
@with_identity
@click.pass_context
def detect(ctx, app_dir, buildpacks, uid, gid):
    """Print the first build-pack that detects APP_DIR."""
    console = get_console()
    try:
        installer = _buildpack_runner(ctx, app_dir, buildpacks, uid, gid).detect()
        console.print_buildpack_selected(installer.name)
    except StagingError as e:
        _fail(e)


@cli.command()
@click.argument("app_dir", type=click.Path(exists=True, file_okay=False))
@click.option("--buildpacks", required=True, type=click.Path(exists=True, file_okay=False), help="Directory of installed build-packs")
@with_identity
@click.pass_context
def stage(ctx, app_dir, buildpacks, uid, gid):
    """Run detect, compile and release against APP_DIR."""
    console = get_console()
    console.print_staging_started(app_dir, buildpacks)
    try:
        runner = _buildpack_runner(ctx, app_dir, buildpacks, uid, gid)
        result = runner.stage()
        console.print_staging_result(result)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except StagingError as e:
        _fail(e)


@cli.command()
@click.argument("app_dir", type=click.Path(exists=True, file_okay=False))
@click.pass_context
def resolve(ctx, app_dir):
    """List the plain and git gems pinned in APP_DIR/Gemfile.lock."""
    console = get_console()
    if not lockfile_path(app_dir).exists():
        console.print_error(
            "No lockfile",
            f"Could not find {lockfile_path(app_dir)}",
            suggestion="Run `bundle lock` in the app before staging.",
        )
        sys.exit(1)
    resolver = LockfileResolver.from_app(app_dir)
    console.print_dependencies(resolver.plain_dependencies(), resolver.git_dependencies())


@cli.command("install-gems")
@click.argument("app_dir", type=click.Path(exists=True, file_okay=False))
@click.option("--library-version", required=True, help="Ruby library version, e.g. 1.9.1")
@click.option("--ruby", "ruby_cmd", default="ruby", show_default=True, help="Ruby executable used for gem install")
@click.option("--base-dir", required=True, type=click.Path(file_okay=False), help="Shared gem cache + blessed gems root")
@click.option("--bundler/--no-bundler", default=False, help="Also install bundler into the app")
@with_identity
@click.pass_context
def install_gems(ctx, app_dir, library_version, ruby_cmd, base_dir, bundler, uid, gid):
    """Install every gem in APP_DIR/Gemfile.lock into the app."""
    settings: Settings = ctx.obj["settings"]
    console = get_console()
    logger = staging_logger(app_dir, debug=ctx.obj["debug"])

    task = GemfileTask(
        app_dir,
        library_version,
        ruby_cmd,
        base_dir,
        resolve_identity(settings, uid, gid),
        logger=logger,
        fetcher=GemFetcher(settings.rubygems_url, max_workers=settings.fetch_workers, logger=logger),
        git_path=settings.git_path,
    )
    try:
        if bundler:
            task.install_bundler()
        install_app_gems(task)
        count = len(task.resolver.dependencies())
        console.print_gems_installed(str(task.installation_directory), count)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        _fail(e)


if __name__ == "__main__":
    cli()
