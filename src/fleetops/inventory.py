"""Inventory management for fleetops.

Parses grouped host/variable descriptions and resolves the effective
connection parameters for each host.

Two file formats are accepted:

- INI (Ansible style): ``[group]`` sections listing hosts with optional
  inline ``key=value`` pairs, ``[group:vars]`` sections for group variables
  and ``[all:vars]`` for global variables.
- YAML: groups at the top level, each with a ``hosts`` mapping of host name
  to variables and an optional ``vars`` mapping. The ``all`` group's vars
  are global.

Connection variables exist in a legacy form (``ansible_user``) and a native
form (``fleetops_user``). The native form always wins when both are set for
the same host, regardless of which scope each one came from.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

import yaml

from .exceptions import ConfigurationError, FormatError
from .types import EffectiveHostConfig, process_owner

logger = logging.getLogger(__name__)

NATIVE_PREFIX = "fleetops_"
LEGACY_PREFIX = "ansible_"
GLOBAL_GROUP = "all"

HOST_VAR = "host"
USER_VAR = "user"
PORT_VAR = "port"
CONNECTION_VAR = "connection"
IDENTITY_VAR = "ssh_private_key_file"

SUPPORTED_VAR_SUFFIXES = frozenset(
    {HOST_VAR, USER_VAR, PORT_VAR, CONNECTION_VAR, IDENTITY_VAR}
)

DEFAULT_PORT = 22

# Ansible range notation such as web[01:50].example.com
RANGE_PATTERN = re.compile(r".*\[[0-9a-zA-Z]+:[0-9a-zA-Z]+\].*")

UNSUPPORTED_ANSIBLE_VARS = frozenset(
    {
        "ansible_become",
        "ansible_become_user",
        "ansible_become_pass",
        "ansible_become_method",
        "ansible_become_flags",
        "ansible_python_interpreter",
        "ansible_shell_type",
        "ansible_shell_executable",
        "ansible_ssh_common_args",
        "ansible_ssh_extra_args",
        "ansible_ssh_pipelining",
        "ansible_ssh_pass",
        "ansible_sudo",
        "ansible_sudo_pass",
    }
)


@dataclass
class HostGroup:
    """A group of hosts in the inventory with shared variables.

    Attributes:
        name: Group name (e.g., "webservers", "databases")
        hosts: Host identifiers in declaration order
        vars: Group-level variables inherited by all hosts in the group

    Example:
        >>> group = HostGroup(name="webservers", hosts=["web01"])
        >>> group.vars["ansible_user"] = "deploy"
    """

    name: str
    hosts: list[str] = field(default_factory=list)
    vars: dict[str, str] = field(default_factory=dict)

    def add_host(self, hostname: str) -> None:
        """Add a host to this group, keeping declaration order."""
        self.hosts.append(hostname)


@dataclass
class Inventory:
    """Parsed inventory: groups, layered variables and parse warnings.

    Attributes:
        groups: Mapping of group name to HostGroup
        global_vars: Variables that apply to every host
        host_vars: Host-specific variables keyed by host identifier
        warnings: Non-fatal problems found while loading

    Example:
        >>> inventory = parse("[web]\\nweb01 ansible_port=2222\\n")
        >>> inventory.get_hosts("web")
        ['web01']
        >>> inventory.get_hosts("missing")
        []
    """

    groups: dict[str, HostGroup] = field(default_factory=dict)
    global_vars: dict[str, str] = field(default_factory=dict)
    host_vars: dict[str, dict[str, str]] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def add_group(self, name: str) -> HostGroup:
        """Get or create a group by name."""
        group = self.groups.get(name)
        if group is None:
            group = HostGroup(name=name)
            self.groups[name] = group
        return group

    def add_host(self, group_name: str, hostname: str) -> None:
        self.add_group(group_name).add_host(hostname)

    def add_global_var(self, key: str, value: str) -> None:
        self.global_vars[key] = value

    def add_group_var(self, group_name: str, key: str, value: str) -> None:
        self.add_group(group_name).vars[key] = value

    def add_host_var(self, hostname: str, key: str, value: str) -> None:
        self.host_vars.setdefault(hostname, {})[key] = value

    def get_group(self, name: str) -> HostGroup | None:
        """Get a group by name."""
        return self.groups.get(name)

    def get_hosts(self, group_name: str) -> list[str]:
        """Get the hosts of a group; unknown groups yield an empty list."""
        group = self.groups.get(group_name)
        return list(group.hosts) if group else []

    def get_group_vars(self, group_name: str) -> dict[str, str]:
        group = self.groups.get(group_name)
        return dict(group.vars) if group else {}

    def get_host_vars(self, hostname: str) -> dict[str, str]:
        return dict(self.host_vars.get(hostname, {}))

    def groups_of(self, hostname: str) -> list[str]:
        """Names of the groups that list a host, in declaration order."""
        return [name for name, group in self.groups.items() if hostname in group.hosts]

    def get_all_hosts(self) -> list[str]:
        """Get all unique host identifiers across groups, in order."""
        seen: dict[str, None] = {}
        for group in self.groups.values():
            for hostname in group.hosts:
                seen.setdefault(hostname, None)
        return list(seen)


class _WarningCollector:
    """Collects parse warnings, reporting each variable name only once."""

    def __init__(self, warnings: list[str]) -> None:
        self.warnings = warnings
        self._warned_vars: set[str] = set()

    def add(self, line_number: int, message: str) -> None:
        self.warnings.append(f"Line {line_number}: {message}")

    def check_variable(self, key: str, line_number: int) -> None:
        if key in self._warned_vars:
            return

        if key in UNSUPPORTED_ANSIBLE_VARS:
            self._warned_vars.add(key)
            self.add(line_number, f"'{key}' is not supported. {_unsupported_var_hint(key)}")
            return

        for prefix in (LEGACY_PREFIX, NATIVE_PREFIX):
            if key.startswith(prefix) and key[len(prefix):] not in SUPPORTED_VAR_SUFFIXES:
                self._warned_vars.add(key)
                supported = ", ".join(
                    f"{NATIVE_PREFIX}{suffix}" for suffix in sorted(SUPPORTED_VAR_SUFFIXES)
                )
                self.add(
                    line_number,
                    f"'{key}' is not a recognized variable. Supported variables are: "
                    f"{supported} (or their {LEGACY_PREFIX}* equivalents).",
                )
                return


def _unsupported_var_hint(key: str) -> str:
    if key.startswith("ansible_become") or key in ("ansible_sudo", "ansible_sudo_pass"):
        return "For privilege escalation, set SUDO_PASSWORD and run the command with privilege."
    if key == "ansible_python_interpreter":
        return "Commands run through the remote shell; no interpreter is needed."
    if key.startswith("ansible_ssh_"):
        return "Configure SSH through ~/.ssh/config or ssh-agent."
    return "This Ansible feature is not implemented."


def _split_assignment(text: str) -> tuple[str, str] | None:
    """Split ``key=value``; None if there is no '=' or the key is empty."""
    key, sep, value = text.partition("=")
    key = key.strip()
    if not sep or not key:
        return None
    return key, value.strip()


def parse(source: str | Iterable[str]) -> Inventory:
    """Parse an INI inventory.

    Blank lines and comments (``#`` or ``;``) are skipped. Malformed section
    headers and malformed ``key=value`` lines in vars sections raise
    FormatError. Other oddities (``:children`` sections, host range patterns,
    stray tokens, hosts outside any section) are skipped and recorded in
    ``Inventory.warnings``.

    Args:
        source: Inventory text, or an iterable of lines

    Returns:
        Parsed Inventory

    Raises:
        FormatError: On a malformed section header or vars line

    Example:
        >>> inventory = parse('''
        ... [all:vars]
        ... ansible_user=deploy
        ...
        ... [web]
        ... web01 fleetops_port=2222
        ... ''')
        >>> inventory.global_vars
        {'ansible_user': 'deploy'}
    """
    lines = source.splitlines() if isinstance(source, str) else source
    inventory = Inventory()
    collector = _WarningCollector(inventory.warnings)

    current_group: str | None = None
    in_vars_section = False
    skipping_section = False

    for line_number, raw_line in enumerate(lines, start=1):
        line = raw_line.strip()

        if not line or line.startswith("#") or line.startswith(";"):
            continue

        if line.startswith("["):
            if not line.endswith("]"):
                raise FormatError(f"Malformed section header '{line}'", line_number)

            declaration = line[1:-1].strip()
            name, _, suffix = declaration.partition(":")
            name = name.strip()
            if not name:
                raise FormatError(f"Empty group name in '{line}'", line_number)

            if suffix == "children":
                collector.add(
                    line_number,
                    f"[{declaration}] - ':children' groups are not supported. "
                    "List hosts directly in each group instead.",
                )
                current_group = None
                in_vars_section = False
                skipping_section = True
            elif suffix == "vars":
                current_group = name
                in_vars_section = True
                skipping_section = False
            elif suffix:
                raise FormatError(f"Unknown section type ':{suffix}' in '{line}'", line_number)
            else:
                current_group = name
                in_vars_section = False
                skipping_section = False
                inventory.add_group(name)
            continue

        if skipping_section:
            continue

        if in_vars_section:
            assignment = _split_assignment(line)
            if assignment is None:
                raise FormatError(f"Expected key=value, got '{line}'", line_number)
            key, value = assignment
            collector.check_variable(key, line_number)
            if current_group == GLOBAL_GROUP:
                inventory.add_global_var(key, value)
            else:
                inventory.add_group_var(current_group, key, value)
            continue

        if current_group is None:
            collector.add(line_number, f"'{line}' is outside any group and was ignored.")
            continue

        tokens = line.split()
        hostname = tokens[0]

        if RANGE_PATTERN.match(hostname):
            collector.add(
                line_number,
                f"'{hostname}' - Range patterns like [01:50] are not supported. "
                "List each host individually.",
            )
            continue

        inventory.add_host(current_group, hostname)

        for token in tokens[1:]:
            assignment = _split_assignment(token)
            if assignment is None:
                collector.add(line_number, f"Ignoring token '{token}' for host '{hostname}'.")
                continue
            key, value = assignment
            collector.check_variable(key, line_number)
            inventory.add_host_var(hostname, key, value)

    for warning in inventory.warnings:
        logger.warning(f"Inventory: {warning}")

    return inventory


def _load_inventory_yaml(data: dict[str, Any] | None) -> Inventory:
    """Build an Inventory from parsed YAML data.

    Expected structure (groups at top level):

        all:
          vars:
            ansible_user: deploy
        webservers:
          hosts:
            web01:
              ansible_port: 2222
          vars:
            http_port: 80
    """
    inventory = Inventory()
    if not data:
        return inventory

    if not isinstance(data, dict):
        raise FormatError("YAML inventory must be a mapping of group names")

    for group_name, group_data in data.items():
        if not isinstance(group_data, dict):
            continue

        group_name = str(group_name)
        group_vars = group_data.get("vars")
        if isinstance(group_vars, dict):
            for key, value in group_vars.items():
                if group_name == GLOBAL_GROUP:
                    inventory.add_global_var(str(key), str(value))
                else:
                    inventory.add_group_var(group_name, str(key), str(value))

        hosts = group_data.get("hosts")
        if isinstance(hosts, dict):
            for hostname, host_data in hosts.items():
                inventory.add_host(group_name, str(hostname))
                if isinstance(host_data, dict):
                    for key, value in host_data.items():
                        inventory.add_host_var(str(hostname), str(key), str(value))
        elif group_name != GLOBAL_GROUP:
            inventory.add_group(group_name)

    return inventory


def load_inventory(inventory_file: str | Path) -> Inventory:
    """Load an inventory file, choosing the format by extension.

    ``.yml``/``.yaml`` files are read as YAML, anything else as INI.

    Raises:
        FormatError: If the file is malformed
        OSError: If the file cannot be read
    """
    path = Path(inventory_file)
    content = path.read_text()

    if path.suffix in (".yml", ".yaml"):
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise FormatError(f"Invalid YAML inventory {path}: {e}") from e
        inventory = _load_inventory_yaml(data)
    else:
        inventory = parse(content)

    logger.debug(
        f"Loaded inventory {path}: {len(inventory.groups)} group(s), "
        f"{len(inventory.get_all_hosts())} host(s)"
    )
    return inventory


def load_localhost() -> Inventory:
    """Generate a localhost-only inventory for local execution.

    Example:
        >>> inventory = load_localhost()
        >>> resolve(inventory, "localhost", ["all"]).is_local
        True
    """
    inventory = Inventory()
    inventory.add_host(GLOBAL_GROUP, "localhost")
    inventory.add_host_var("localhost", f"{NATIVE_PREFIX}{CONNECTION_VAR}", "local")
    return inventory


def _pick(variables: dict[str, str], suffix: str) -> str | None:
    """Return the native-prefixed value if present, else the legacy one."""
    native = variables.get(f"{NATIVE_PREFIX}{suffix}")
    if native is not None:
        return native
    return variables.get(f"{LEGACY_PREFIX}{suffix}")


def merge_vars(
    inventory: Inventory, hostname: str, group_names: Iterable[str]
) -> dict[str, str]:
    """Merge variables for a host: global, then groups in order, then host."""
    merged = dict(inventory.global_vars)
    for group_name in group_names:
        merged.update(inventory.get_group_vars(group_name))
    merged.update(inventory.get_host_vars(hostname))
    return merged


def resolve(
    inventory: Inventory, hostname: str, group_names: Iterable[str]
) -> EffectiveHostConfig:
    """Compute the effective configuration of one host.

    Variables merge with priority host > group > global; among groups,
    later entries in ``group_names`` win. For every connection variable the
    native-prefixed key wins over the legacy-prefixed key.

    Args:
        inventory: Parsed inventory
        hostname: Host identifier
        group_names: Groups whose vars apply, lowest priority first

    Returns:
        EffectiveHostConfig for the host

    Raises:
        ConfigurationError: If the port is not an integer
    """
    merged = merge_vars(inventory, hostname, group_names)

    port_value = _pick(merged, PORT_VAR)
    try:
        port = int(port_value) if port_value is not None else DEFAULT_PORT
    except ValueError:
        raise ConfigurationError(
            f"Host '{hostname}': port must be an integer, got '{port_value}'"
        ) from None

    connection = _pick(merged, CONNECTION_VAR)

    return EffectiveHostConfig(
        name=hostname,
        hostname=_pick(merged, HOST_VAR) or hostname,
        user=_pick(merged, USER_VAR) or process_owner(),
        port=port,
        identity_file=_pick(merged, IDENTITY_VAR),
        local_mode=connection == "local",
        vars=merged,
    )


def resolve_group(inventory: Inventory, group_name: str) -> list[EffectiveHostConfig]:
    """Resolve every host of a group; an unknown group yields []."""
    return [
        resolve(inventory, hostname, [group_name])
        for hostname in inventory.get_hosts(group_name)
    ]


def resolve_local() -> EffectiveHostConfig:
    """Synthesize a localhost configuration without any inventory.

    Never fails for lack of an inventory. The user is the process owner.
    """
    return EffectiveHostConfig(
        name="localhost",
        hostname="localhost",
        user=process_owner(),
        port=DEFAULT_PORT,
        local_mode=True,
        vars={f"{NATIVE_PREFIX}{CONNECTION_VAR}": "local"},
    )


def resolve_hosts(
    inventory: Inventory, group_names: Iterable[str] | None = None
) -> list[EffectiveHostConfig]:
    """Resolve the hosts of the given groups, or of the whole inventory.

    Each host is resolved against every group that lists it, in declaration
    order, so its configuration does not depend on which group selected it.
    Hosts are returned once each, in order of first appearance.
    """
    if group_names is None:
        hostnames = inventory.get_all_hosts()
    else:
        seen: dict[str, None] = {}
        for group_name in group_names:
            for hostname in inventory.get_hosts(group_name):
                seen.setdefault(hostname, None)
        hostnames = list(seen)
    return [resolve(inventory, hostname, inventory.groups_of(hostname)) for hostname in hostnames]
