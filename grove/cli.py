import signal
import threading
from pathlib import Path

import click

from grove.config import GroveConfig, load_config, load_toml, save_project_config
from grove.constants import PROJECT_CONFIG_NAME
from grove.errors import GroveError, UnpushedCommitsError
from grove.freshness import freshness_label
from grove.logging_config import setup_logging
from grove.manager import WorktreeManager
from grove.models import WorktreeMetadata
from grove.services import gitignore
from grove.services.events import Event
from grove.services.profiles import GitignoreProfileStore
from grove.services.store import project_id_for

project_option = click.option(
    "--project",
    "-C",
    "project",
    default=".",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Project root (defaults to the current directory)",
)


def _resolve(project: Path) -> tuple[str, Path]:
    root = project.expanduser().resolve()
    return project_id_for(root), root


def _manager(project: Path) -> WorktreeManager:
    return WorktreeManager.for_project(project)


def _fail(error: GroveError) -> None:
    click.echo(f"Error [{error.code}]: {error.message}", err=True)
    raise SystemExit(1)


def _status_line(wt: WorktreeMetadata) -> str:
    st = wt.status
    parts = [f"↑{st.ahead} ↓{st.behind}"]
    if st.conflicted:
        parts.append("conflict")
    line = f"{wt.branch_name} [{' '.join(parts)}]"
    if st.dirty:
        line += " *"
    if wt.is_stale:
        line += " (missing)"
    elif wt.branch_drifted:
        line += f" (on {st.current_branch})"
    return line


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Show info messages")
@click.option("--debug", is_flag=True, help="Show debug messages and write grove.log")
def cli(verbose: bool, debug: bool) -> None:
    """grove: create, track and archive git worktrees."""
    setup_logging(verbose=verbose, debug=debug)


@cli.command()
@click.argument("branch")
@project_option
@click.option("--copy", "-c", "copies", multiple=True, help="Ignored pattern to copy (repeatable)")
@click.option("--profile", "-p", default=None, help="Saved gitignore profile to copy")
@click.option("--defaults", is_flag=True, help="Copy every non-sensitive ignored pattern")
def create(branch: str, project: Path, copies: tuple[str, ...], profile: str | None, defaults: bool) -> None:
    """Create a worktree for BRANCH (new or existing)."""
    project_id, root = _resolve(project)
    selections = list(copies)
    if defaults:
        selections += gitignore.default_selection(gitignore.parse_project(root))
    for warning in gitignore.security_warnings(selections):
        click.echo(f"Warning: {warning}", err=True)

    manager = _manager(root)
    try:
        wt = manager.worktrees.create(project_id, root, branch, selections, profile=profile)
    except GroveError as e:
        _fail(e)
    click.echo(f"Created worktree: {wt.worktree_path} (branch: {wt.branch_name})")
    click.echo(f"  id: {wt.id}")


@cli.command("list")
@project_option
def list_cmd(project: Path) -> None:
    """List active worktrees and their last known status."""
    project_id, root = _resolve(project)
    worktrees = _manager(root).worktrees.list(project_id)
    if not worktrees:
        click.echo("No worktrees.")
        return
    for wt in worktrees:
        click.echo(f"\n{_status_line(wt)}  {freshness_label(wt.last_accessed_at)}")
        click.echo(f"  id:   {wt.id}")
        click.echo(f"  path: {wt.worktree_path}")


@cli.command()
@click.argument("worktree_id")
@project_option
def status(worktree_id: str, project: Path) -> None:
    """Refresh and show the status of one worktree."""
    _, root = _resolve(project)
    manager = _manager(root)
    try:
        st = manager.worktrees.status(worktree_id)
    except GroveError as e:
        _fail(e)
    finally:
        manager.poller.stop()
    click.echo(f"branch:     {st.current_branch}")
    click.echo(f"dirty:      {st.dirty}")
    click.echo(f"ahead:      {st.ahead}")
    click.echo(f"behind:     {st.behind}")
    click.echo(f"conflicted: {st.conflicted}")


@cli.command()
@click.argument("worktree_id")
@project_option
def archive(worktree_id: str, project: Path) -> None:
    """Move a worktree into the archive (restorable for the retention period)."""
    _, root = _resolve(project)
    try:
        archived = _manager(root).archives.archive(worktree_id)
    except GroveError as e:
        _fail(e)
    click.echo(f"Archived {archived.branch_name} to {archived.archive_path}")
    click.echo(f"  expires: {archived.expires_at}")
    if archived.unpushed_commits:
        click.echo(f"  warning: branch has unpushed commits ({archived.commit_count} unique)", err=True)


@cli.command()
@click.argument("archive_id")
@project_option
def restore(archive_id: str, project: Path) -> None:
    """Restore an archived worktree to its original path."""
    _, root = _resolve(project)
    try:
        wt = _manager(root).archives.restore(archive_id)
    except GroveError as e:
        _fail(e)
    click.echo(f"Restored worktree: {wt.worktree_path} (branch: {wt.branch_name})")


@cli.command()
@click.argument("worktree_id")
@project_option
@click.option("--delete-branch", "-D", is_flag=True, help="Also delete the branch")
@click.option("--force", "-f", is_flag=True, help="Delete the branch even with unpushed commits")
def delete(worktree_id: str, project: Path, delete_branch: bool, force: bool) -> None:
    """Permanently delete a worktree (no archive)."""
    _, root = _resolve(project)
    manager = _manager(root)
    try:
        manager.worktrees.delete(worktree_id, delete_branch=delete_branch, force=force)
    except UnpushedCommitsError as e:
        click.echo(f"{e.message}. Re-run with --force to delete it anyway.", err=True)
        raise SystemExit(1)
    except GroveError as e:
        _fail(e)
    click.echo(f"Deleted worktree {worktree_id}")


@cli.command()
@project_option
@click.option("--delete", "delete_id", default=None, help="Delete one archive by id")
@click.option("--yes", is_flag=True, help="Confirm deleting an archive with unpushed commits")
def archives(project: Path, delete_id: str | None, yes: bool) -> None:
    """List archived worktrees, or delete one with --delete ID."""
    project_id, root = _resolve(project)
    manager = _manager(root)
    if delete_id is not None:
        try:
            manager.archives.delete_archive(delete_id, confirm_unpushed=yes)
        except UnpushedCommitsError as e:
            click.echo(f"{e.message}. Re-run with --yes to delete it anyway.", err=True)
            raise SystemExit(1)
        except GroveError as e:
            _fail(e)
        click.echo(f"Deleted archive {delete_id}")
        return

    records = manager.archives.list_archived(project_id)
    if not records:
        click.echo("No archives.")
        return
    for a in records:
        flags = []
        if a.unpushed_commits:
            flags.append("unpushed")
        if a.needs_confirmation:
            flags.append("expired, needs confirmation")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        click.echo(f"\n{a.branch_name}{suffix}")
        click.echo(f"  id:      {a.id}")
        click.echo(f"  path:    {a.archive_path}")
        click.echo(f"  expires: {a.expires_at}")


@cli.command()
@project_option
def sweep(project: Path) -> None:
    """Delete expired archives now."""
    project_id, root = _resolve(project)
    result = _manager(root).archives.sweep_expired(project_id)
    click.echo(f"Deleted {len(result.deleted)} expired archive(s).")
    for archive_id in result.needs_confirmation:
        click.echo(f"  {archive_id} has unpushed commits; delete with: grove archives --delete {archive_id} --yes")
    if result.failed:
        click.echo(f"Failed to delete: {', '.join(result.failed)}", err=True)
        raise SystemExit(1)


@cli.command()
@project_option
def patterns(project: Path) -> None:
    """Show the project's .gitignore patterns grouped by category."""
    _, root = _resolve(project)
    parsed = gitignore.parse_project(root)
    if not parsed:
        click.echo("No .gitignore patterns.")
        return
    for category, items in gitignore.group_patterns(parsed).items():
        click.echo(f"\n[{category.value}]")
        for p in items:
            marker = " (sensitive)" if p.is_security_sensitive else ""
            click.echo(f"  {p.pattern}{marker}")


@cli.group()
def profiles() -> None:
    """Manage saved gitignore selections."""


@profiles.command("list")
@project_option
def profiles_list(project: Path) -> None:
    _, root = _resolve(project)
    saved = GitignoreProfileStore(root).list()
    if not saved:
        click.echo("No profiles.")
        return
    for profile in saved:
        click.echo(f"{profile.name}: {', '.join(profile.patterns)}")


@profiles.command("save")
@click.argument("name")
@click.argument("pattern_list", nargs=-1, required=True)
@project_option
def profiles_save(name: str, pattern_list: tuple[str, ...], project: Path) -> None:
    _, root = _resolve(project)
    try:
        GitignoreProfileStore(root).save(name, list(pattern_list))
    except GroveError as e:
        _fail(e)
    click.echo(f"Saved profile '{name}' ({len(pattern_list)} patterns)")


@profiles.command("delete")
@click.argument("name")
@project_option
def profiles_delete(name: str, project: Path) -> None:
    _, root = _resolve(project)
    try:
        GitignoreProfileStore(root).delete(name)
    except GroveError as e:
        _fail(e)
    click.echo(f"Deleted profile '{name}'")


@cli.command()
@project_option
def watch(project: Path) -> None:
    """Run the status poller and archive sweep in the foreground, printing events."""
    _, root = _resolve(project)
    manager = _manager(root)

    def _print(event: Event) -> None:
        details = " ".join(f"{k}={v}" for k, v in event.payload.items() if k != "status")
        click.echo(f"{event.name} {event.worktree_id} {details}".rstrip())

    manager.bus.subscribe(_print)
    done = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: done.set())
    with manager:
        click.echo(f"Watching worktrees every {manager.config.poll_interval_s:g}s (Ctrl-C to stop)")
        try:
            done.wait()
        except KeyboardInterrupt:
            pass


@cli.command()
@click.argument("key", required=False)
@click.argument("value", required=False)
@project_option
def config(key: str | None, value: str | None, project: Path) -> None:
    """View or edit project settings (.grove.toml).

    With no args: show current config.
    With KEY: show a specific value.
    With KEY VALUE: set a value (e.g. `grove config archive.retention_days 14`).
    """
    root = project.expanduser().resolve()
    resolved = load_config(root)
    project_cfg = load_toml(root / PROJECT_CONFIG_NAME)

    if key is None:
        click.echo(f"Project: {root}")
        click.echo(f"Config:  {root / PROJECT_CONFIG_NAME}\n")
        click.echo("[poller]")
        click.echo(f"  interval_s                   = {resolved.poll_interval_s}")
        click.echo(f"  max_workers                  = {resolved.max_workers}")
        click.echo(f"  persistent_failure_threshold = {resolved.persistent_failure_threshold}")
        click.echo("\n[timeouts]")
        click.echo(f"  status_s = {resolved.status_timeout_s}")
        click.echo(f"  mutate_s = {resolved.mutate_timeout_s}")
        click.echo("\n[archive]")
        click.echo(f"  retention_days   = {resolved.retention_days}")
        click.echo(f"  sweep_interval_s = {resolved.sweep_interval_s}")
        click.echo("\n[git]")
        click.echo(f"  remote = {resolved.remote}")
        return

    if "." not in key:
        click.echo("Key must be section.field (e.g. poller.interval_s)", err=True)
        raise SystemExit(1)

    section_name, field_name = key.split(".", 1)
    section = getattr(project_cfg, section_name, None) if section_name in GroveConfig.model_fields else None
    if section is None or field_name not in type(section).model_fields:
        click.echo(f"Unknown config key: {key}", err=True)
        raise SystemExit(1)

    if value is None:
        click.echo(getattr(section, field_name))
        return

    field_type = type(getattr(section, field_name))
    try:
        parsed_value = field_type(value)
    except ValueError:
        click.echo(f"Invalid value for {key}: {value}", err=True)
        raise SystemExit(1)
    setattr(section, field_name, parsed_value)
    path = save_project_config(root, project_cfg)
    click.echo(f"Set {key} = {parsed_value}")
    click.echo(f"Saved to {path}")
