"""Volume mount list construction and container CLI arg building."""

from __future__ import annotations

from pathlib import Path

from berth.config import get_settings
from berth.logger import logger
from berth.types import AdditionalMount, RegisteredGroup, VolumeMount

_EXTRA_MOUNT_ROOT = "/workspace/extra"


def _resolve_additional_mount(mount: AdditionalMount, group_name: str) -> VolumeMount | None:
    """Validate one extra mount; returns None (and logs) when it is rejected."""
    host_path = Path(mount.host_path).expanduser()
    if not host_path.is_absolute() or not host_path.exists():
        logger.warning(
            "Additional mount rejected: host path missing or relative",
            group=group_name,
            host_path=mount.host_path,
        )
        return None
    name = mount.container_path or host_path.name
    if name.startswith("/") or ".." in Path(name).parts:
        logger.warning(
            "Additional mount rejected: container path must be relative",
            group=group_name,
            container_path=name,
        )
        return None
    return VolumeMount(str(host_path.resolve()), f"{_EXTRA_MOUNT_ROOT}/{name}", mount.readonly)


def _build_volume_mounts(group: RegisteredGroup) -> list[VolumeMount]:
    """Build the mount list for one container invocation.

    Every group gets its own working directory and its own IPC namespace;
    nothing is shared between groups.
    """
    s = get_settings()
    mounts: list[VolumeMount] = []

    group_dir = s.groups_dir / group.folder
    group_dir.mkdir(parents=True, exist_ok=True)
    mounts.append(VolumeMount(str(group_dir), "/workspace/group", readonly=False))

    group_ipc_dir = s.data_dir / "ipc" / group.folder
    (group_ipc_dir / "input").mkdir(parents=True, exist_ok=True)
    mounts.append(VolumeMount(str(group_ipc_dir), "/workspace/ipc", readonly=False))

    if group.container_config and group.container_config.additional_mounts:
        for extra in group.container_config.additional_mounts:
            resolved = _resolve_additional_mount(extra, group.name)
            if resolved is not None:
                mounts.append(resolved)

    return mounts


def _build_container_args(
    mounts: list[VolumeMount], container_name: str, env: dict[str, str]
) -> list[str]:
    """Build CLI args for `<runtime> run`.

    ``-i`` keeps stdin open for the input payload; ``--rm`` removes the
    container once the agent-runner exits.
    """
    args = ["run", "-i", "--rm", "--name", container_name]
    for key, value in sorted(env.items()):
        args.extend(["-e", f"{key}={value}"])
    for m in mounts:
        if m.readonly:
            args.extend(
                [
                    "--mount",
                    f"type=bind,source={m.host_path},target={m.container_path},readonly",
                ]
            )
        else:
            args.extend(["-v", f"{m.host_path}:{m.container_path}"])
    args.append(get_settings().container.image)
    return args
