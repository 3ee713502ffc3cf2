from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from .archive import ExtractedTree
from .config import MINIMAL_LAYOUT, BaseSetupConfig, CommandSpec, LayoutConfig, ServiceSpec
from .manifest import PackageManifest
from .models import ActionKind, RestorationAction

ROLE_ORDER = {"database": 0, "application": 1, "proxy": 2, "other": 3}


def plan(
    tree: ExtractedTree,
    manifest: PackageManifest,
    layout: LayoutConfig = MINIMAL_LAYOUT,
) -> Tuple[RestorationAction, ...]:
    """Build the ordered restore plan for an extracted backup.

    Packages first (optional), then allow-listed files (required), then any
    layout commands whose trigger path is present, then unit enables
    (optional), service restarts in dependency order and finally status
    checks (optional). The result depends only on the tree contents, the
    manifest and the layout.
    """
    actions: List[RestorationAction] = []
    actions.extend(package_actions(manifest.packages))
    actions.extend(file_actions(tree, layout.allow_list))
    actions.extend(command_actions(layout.commands, tree))
    if layout.enable_services:
        actions.extend(enable_actions(layout.services))
    actions.extend(service_actions(layout.services))
    if layout.verify_services:
        actions.extend(status_actions(layout.services))
    return tuple(actions)


def plan_base_packages(base: BaseSetupConfig) -> Tuple[RestorationAction, ...]:
    actions: List[RestorationAction] = []
    if base.update_command:
        actions.append(RestorationAction(kind=ActionKind.RUN_COMMAND, target=base.update_command, required=False))
    actions.extend(package_actions(base.packages))
    actions.extend(command_actions(base.commands))
    return tuple(actions)


def package_actions(packages: Iterable[str]) -> Iterator[RestorationAction]:
    for name in packages:
        yield RestorationAction(kind=ActionKind.INSTALL_PACKAGE, target=name, required=False)


def file_actions(tree: ExtractedTree, allow_list: Sequence[str]) -> Iterator[RestorationAction]:
    emitted: Set[str] = set()
    for entry in allow_list:
        source = tree.path(entry)
        if source.is_symlink() or source.is_file():
            relatives = [entry]
        elif source.is_dir():
            relatives = [f"{entry}/{relative}" for relative in _walk(source)]
        else:
            continue

        for relative in relatives:
            if relative in emitted:
                continue
            emitted.add(relative)
            yield RestorationAction(
                kind=ActionKind.PLACE_FILE,
                target=f"/{relative}",
                payload_ref=str(tree.path(relative)),
                required=True,
            )


def command_actions(
    commands: Iterable[CommandSpec],
    tree: Optional[ExtractedTree] = None,
) -> Iterator[RestorationAction]:
    for spec in commands:
        if spec.when_present and (tree is None or not tree.contains(spec.when_present)):
            continue
        yield RestorationAction(kind=ActionKind.RUN_COMMAND, target=spec.command, required=spec.required)


def service_actions(services: Iterable[ServiceSpec]) -> Iterator[RestorationAction]:
    for spec in _by_role(services):
        yield RestorationAction(kind=ActionKind.RESTART_SERVICE, target=spec.name, required=True)


def enable_actions(services: Iterable[ServiceSpec]) -> Iterator[RestorationAction]:
    for spec in _by_role(services):
        yield RestorationAction(kind=ActionKind.RUN_COMMAND, target=f"systemctl enable {spec.name}", required=False)


def status_actions(services: Iterable[ServiceSpec]) -> Iterator[RestorationAction]:
    """Post-restore health checks; a service that is not active shows up as a failed optional action."""
    for spec in _by_role(services):
        yield RestorationAction(kind=ActionKind.RUN_COMMAND, target=f"systemctl is-active {spec.name}", required=False)


def _by_role(services: Iterable[ServiceSpec]) -> List[ServiceSpec]:
    return sorted(services, key=lambda spec: ROLE_ORDER[spec.role])


def _walk(directory: Path) -> List[str]:
    """Regular files and symlinks beneath ``directory``, as sorted relative POSIX paths."""
    found: List[str] = []
    for current, dirnames, filenames in os.walk(directory, followlinks=False):
        current_path = Path(current)
        for name in dirnames:
            if (current_path / name).is_symlink():
                found.append((current_path / name).relative_to(directory).as_posix())
        for name in filenames:
            found.append((current_path / name).relative_to(directory).as_posix())
    return sorted(found)
