"""OpenCode project config generation.

Fills ``${VAR}`` placeholders in ``opencode.json.template`` from the
environment and writes the result where ``opencode serve`` looks for project
config. Run by the entrypoint before the server starts::

    python -m agent_runner.config_generator [template] [output]
"""

from __future__ import annotations

import json
import os
import re
import sys
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from agent_runner.errors import ConfigurationError

DEFAULT_TEMPLATE_PATH = Path("/app/opencode.json.template")
DEFAULT_OUTPUT_PATH = Path("/workspace/.opencode.json")

_PLACEHOLDER_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def _log(message: str) -> None:
    print(f"[config-generator] {message}", file=sys.stderr, flush=True)


def substitute_env_vars(content: str, env: Mapping[str, str] | None = None) -> str:
    """Replace ``${VAR}`` with its value; unset variables become empty strings."""
    env = os.environ if env is None else env

    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        value = env.get(name)
        if value is None:
            _log(f"Warning: Environment variable {name} is not set")
            return ""
        return value

    return _PLACEHOLDER_RE.sub(replace, content)


def generate_config(
    template_path: Path = DEFAULT_TEMPLATE_PATH,
    output_path: Path = DEFAULT_OUTPUT_PATH,
    env: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Render the template, validate it as JSON, and write it pretty-printed.

    Raises:
        ConfigurationError: the template is missing or the result is not JSON.
    """
    if not template_path.exists():
        raise ConfigurationError(f"OpenCode template not found at {template_path}")

    content = substitute_env_vars(template_path.read_text(), env)
    try:
        config = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Generated config is not valid JSON: {exc}") from exc

    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(json.dumps(config, indent=2))
    _log(f"Wrote OpenCode config to {output_path}")
    return config


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    template_path = Path(args[0]) if len(args) > 0 else DEFAULT_TEMPLATE_PATH
    output_path = Path(args[1]) if len(args) > 1 else DEFAULT_OUTPUT_PATH
    try:
        generate_config(template_path, output_path)
    except ConfigurationError as exc:
        _log(f"Error: {exc}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
