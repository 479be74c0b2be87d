#!/usr/bin/python3
"""cluster-setup — run Ansible Tower setup for an OpenShift/Kubernetes cluster.

Makes sure ansible-playbook is available (installing it with yum on EL and
Fedora hosts), picks the install/backup/restore/rekey playbook, runs it
against an inventory and keeps a timestamped copy of the output.
"""

import argparse
import os
import re
import shutil
import subprocess
import sys
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

# ── Constants ────────────────────────────────────────────────────────────────

ENGINE = "ansible-playbook"
ENGINE_PACKAGE = "ansible"
PACKAGE_MANAGER = "yum"

EXIT_NO_ENGINE = 32
EXIT_USAGE = 64

ETC_DIR = Path("/etc")

EPEL_URLS = {
    6: "https://dl.fedoraproject.org/pub/epel/epel-release-latest-6.noarch.rpm",
    7: "https://dl.fedoraproject.org/pub/epel/epel-release-latest-7.noarch.rpm",
}

DEFAULT_INVENTORY = "inventory"
LOG_PREFIX = "setup_container_cluster"
TIMESTAMP_FORMAT = "%Y-%m-%d-%H:%M:%S"

# mode -> (playbook, transient log)
MODES = {
    "install": ("install.yml", f"{LOG_PREFIX}.log"),
    "backup":  ("backup.yml", "backup.log"),
    "restore": ("restore.yml", "restore.log"),
    "rekey":   ("rekey.yml", "rekey.log"),
}

BUNDLE_INSTALL_VAR = "bundle_install"

INSTALL_GUIDANCE = """\
Ansible is not installed on this machine.
You must install Ansible before you can install Tower.

For guidance on installing Ansible, consult
http://docs.ansible.com/intro_installation.html."""


PLAYBOOK_DIR_VAR = "CLUSTER_SETUP_PLAYBOOK_DIR"


def playbook_dir() -> Path:
    """Directory holding the playbooks and the default inventory.

    $CLUSTER_SETUP_PLAYBOOK_DIR wins; otherwise the module's own directory
    when it ships the playbooks (a source checkout), else the current
    directory (an installed console script).
    """
    override = os.environ.get(PLAYBOOK_DIR_VAR)
    if override:
        return Path(override)
    here = Path(__file__).resolve().parent
    if (here / MODES["install"][0]).exists():
        return here
    return Path.cwd()


# ── Nerd Font icons ──────────────────────────────────────────────────────────

class _I:
    ROCKET   = "\uf135"
    OK       = "\uf00c"   # check
    WARN     = "\uf071"   # exclamation-triangle
    ERROR    = "\uf057"   # times-circle
    DOWNLOAD = "\uf019"   # download
    LINUX    = "\uf17c"   # tux
    GLOBE    = "\uf0ac"   # globe
    FILE     = "\uf15c"   # file-text


# ── ANSI helpers ─────────────────────────────────────────────────────────────

class _C:
    BOLD   = "\033[1m"
    GREEN  = "\033[32m"
    YELLOW = "\033[33m"
    RED    = "\033[31m"
    CYAN   = "\033[36m"
    RESET  = "\033[0m"

if not sys.stdout.isatty():
    _C.BOLD = _C.GREEN = _C.YELLOW = _C.RED = ""
    _C.CYAN = _C.RESET = ""


def _banner(title: str) -> None:
    print(f"\n{_C.BOLD}{_C.CYAN}{'─' * 60}")
    print(f"  {title}")
    print(f"{'─' * 60}{_C.RESET}")


def _info(msg: str) -> None:
    print(f"  {_C.GREEN}{_I.OK}{_C.RESET}  {msg}")


def _warn(msg: str) -> None:
    print(f"  {_C.YELLOW}{_I.WARN}{_C.RESET}  {msg}")


def _error(msg: str) -> None:
    for line in msg.splitlines() or [""]:
        print(f"  {_C.RED}{_I.ERROR}{_C.RESET}  {line}", file=sys.stderr)


# ── Configuration ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SetupConfig:
    inventory: Path
    mode: str = "install"
    engine_options: tuple = ()
    passthrough: tuple = ()
    override_bundle_install: bool = False

    @property
    def playbook(self) -> str:
        return MODES[self.mode][0]

    @property
    def temp_log(self) -> str:
        return MODES[self.mode][1]


# ── CLI ──────────────────────────────────────────────────────────────────────

USAGE = f"""\
Usage: cluster-setup [Options] [-- Ansible Options]

Options:
  -i INVENTORY_FILE     Path to ansible inventory file (default: {DEFAULT_INVENTORY})
  -e EXTRA_VARS         Set additional ansible variables as key=value or YAML/JSON
                        i.e. -e bundle_install=false will force an online install

  -b                    Perform a database backup in lieu of installing.
  -r                    Perform a database restore in lieu of installing.
  -k                    Generate and distribute a new SECRET_KEY.

  -h                    Show this help message and exit

Ansible Options:
  Additional options to be passed to {ENGINE} can be added
  following the -- separator.

Environment:
  {PLAYBOOK_DIR_VAR}
                        Directory holding the playbooks and the default
                        inventory (default: next to this script if it ships
                        install.yml, else the current directory)
"""


def usage() -> None:
    print(USAGE, end="")
    sys.exit(EXIT_USAGE)


class _UsageParser(argparse.ArgumentParser):
    """ArgumentParser that reports every parse error as a usage error."""

    def error(self, message):
        _error(message)
        usage()


def build_parser() -> argparse.ArgumentParser:
    p = _UsageParser(prog="cluster-setup", add_help=False)
    p.add_argument("-i", dest="inventory", metavar="INVENTORY_FILE")
    p.add_argument("-e", dest="extra_vars", action="append", default=[],
                   metavar="EXTRA_VARS")
    modes = p.add_mutually_exclusive_group()
    modes.add_argument("-b", dest="mode", action="store_const", const="backup")
    modes.add_argument("-r", dest="mode", action="store_const", const="restore")
    modes.add_argument("-k", dest="mode", action="store_const", const="rekey")
    p.add_argument("-h", dest="help", action="store_true")
    return p


def split_args(argv: list) -> tuple:
    """Split *argv* at the first ``--`` into (local, passthrough)."""
    if "--" in argv:
        idx = argv.index("--")
        return list(argv[:idx]), list(argv[idx + 1:])
    return list(argv), []


def parse_args(argv: list) -> SetupConfig:
    local, passthrough = split_args(argv)
    args = build_parser().parse_args(local)
    if args.help:
        usage()

    if args.inventory:
        inventory = Path(os.path.abspath(args.inventory))
    else:
        inventory = playbook_dir() / DEFAULT_INVENTORY

    options = []
    override_bundle_install = False
    for var in args.extra_vars:
        options += ["-e", var]
        if var.split("=", 1)[0] == BUNDLE_INSTALL_VAR:
            override_bundle_install = True

    mode = args.mode or "install"
    if mode != "install":
        options.append("--force-handlers")

    return SetupConfig(
        inventory=inventory,
        mode=mode,
        engine_options=tuple(options),
        passthrough=tuple(passthrough),
        override_bundle_install=override_bundle_install,
    )


# ── Distribution detection ───────────────────────────────────────────────────

class Family(Enum):
    RHEL = "rhel"
    CENTOS = "centos"
    FEDORA = "fedora"
    OTHER = "other"


FAMILIES = {
    "rhel": Family.RHEL,
    "ol": Family.RHEL,
    "centos": Family.CENTOS,
    "fedora": Family.FEDORA,
}

EL_FAMILIES = (Family.RHEL, Family.CENTOS)

REDHAT_RELEASE_PREFIXES = (
    ("Red Hat Enterprise Linux", "rhel"),
    ("CentOS", "centos"),
    ("Fedora", "fedora"),
)

RELEASE_FILES = ("system-release", "centos-release", "fedora-release",
                 "redhat-release")

_RELEASE_RE = re.compile(r"^(.+) release (\d+)([0-9.]*)")


@dataclass(frozen=True)
class Distribution:
    family: Family
    os_id: str
    major: Optional[int] = None

    @property
    def is_el(self) -> bool:
        return self.family in EL_FAMILIES


def _first_line(path: Path) -> str:
    with open(path) as fh:
        return fh.readline().strip()


def read_os_release(path: Path) -> dict:
    """Parse an os-release file into a dict, or {} if it is absent."""
    info = {}
    try:
        with open(path) as fh:
            for line in fh:
                line = line.strip()
                if "=" in line and not line.startswith("#"):
                    key, _, val = line.partition("=")
                    info[key] = val.strip("\"'")
    except FileNotFoundError:
        pass
    return info


def _probe_os_release() -> Optional[str]:
    return read_os_release(ETC_DIR / "os-release").get("ID") or None


def _probe_centos_release() -> Optional[str]:
    return "centos" if (ETC_DIR / "centos-release").exists() else None


def _probe_fedora_release() -> Optional[str]:
    return "fedora" if (ETC_DIR / "fedora-release").exists() else None


def _probe_redhat_release() -> Optional[str]:
    path = ETC_DIR / "redhat-release"
    if not path.exists():
        return None
    first = _first_line(path)
    for prefix, os_id in REDHAT_RELEASE_PREFIXES:
        if first.startswith(prefix):
            return os_id
    return None


DISTRIBUTION_PROBES = (
    _probe_os_release,
    _probe_centos_release,
    _probe_fedora_release,
    _probe_redhat_release,
)


def distribution_id() -> str:
    for probe in DISTRIBUTION_PROBES:
        os_id = probe()
        if os_id:
            return os_id
    return "unknown"


def distribution_major_version() -> Optional[int]:
    """Major release from the first release file present, or None."""
    for name in RELEASE_FILES:
        path = ETC_DIR / name
        if path.exists():
            m = _RELEASE_RE.match(_first_line(path))
            return int(m.group(2)) if m else None
    return None


def detect_distribution() -> Distribution:
    os_id = distribution_id()
    family = FAMILIES.get(os_id, Family.OTHER)
    major = distribution_major_version() if family in EL_FAMILIES else None
    return Distribution(family, os_id, major)


# ── Engine ───────────────────────────────────────────────────────────────────

def is_engine_installed() -> bool:
    return shutil.which(ENGINE) is not None


def run_cmd(cmd):
    """Run a package-manager command; failures are left to the re-check."""
    pretty = " ".join(str(c) for c in cmd)
    _info(f"Running: {pretty}")
    result = subprocess.run(cmd, check=False)
    if result.returncode != 0:
        _warn(f"  ↳ exited {result.returncode}: {pretty}")
    return result


def install_engine(distro: Distribution) -> None:
    if distro.is_el:
        epel_url = EPEL_URLS.get(distro.major)
        if epel_url:
            _info(f"{_I.GLOBE}  Enabling EPEL for EL{distro.major}")
            run_cmd([PACKAGE_MANAGER, "install", "-y", epel_url])
        _info(f"{_I.DOWNLOAD}  Installing {ENGINE_PACKAGE}")
        run_cmd([PACKAGE_MANAGER, "install", "-y", ENGINE_PACKAGE])
    elif distro.family is Family.FEDORA:
        _info(f"{_I.DOWNLOAD}  Installing {ENGINE_PACKAGE}")
        run_cmd([PACKAGE_MANAGER, "install", "-y", ENGINE_PACKAGE])
    else:
        _warn(f"Don't know how to install {ENGINE_PACKAGE} on '{distro.os_id}'")


def ensure_engine() -> None:
    """Install the engine if it is missing; exit 32 when that fails."""
    if is_engine_installed():
        return

    distro = detect_distribution()
    _info(f"{_I.LINUX}  {ENGINE} not found; detected {distro.os_id}"
          + (f" {distro.major}" if distro.major else ""))
    install_engine(distro)

    if not is_engine_installed():
        _error("Unable to install ansible.")
        _error(INSTALL_GUIDANCE)
        sys.exit(EXIT_NO_ENGINE)


def build_command(config: SetupConfig, interactive: bool) -> tuple:
    """Return the (argv, env) pair for the playbook run."""
    cmd = [ENGINE, "-i", str(config.inventory), "-v"]
    cmd += list(config.passthrough)
    cmd += list(config.engine_options)
    cmd.append(config.playbook)

    env = dict(os.environ)
    env["PYTHONUNBUFFERED"] = "x"
    env["ANSIBLE_ERROR_ON_UNDEFINED_VARS"] = "True"
    if interactive:
        env["ANSIBLE_FORCE_COLOR"] = "True"
    else:
        env.pop("ANSIBLE_FORCE_COLOR", None)
    return cmd, env


def _stdin_is_tty() -> bool:
    return sys.stdin is not None and sys.stdin.isatty()


def _echo_raw(chunk: bytes) -> None:
    """Write child output to stdout as-is; text-only streams get a decode."""
    out = getattr(sys.stdout, "buffer", None)
    if out is not None:
        out.write(chunk)
        out.flush()
    else:
        sys.stdout.write(chunk.decode(errors="replace"))
        sys.stdout.flush()


def exit_status(rc: int) -> int:
    """Map Popen's -N (killed by signal N) to the shell's 128+N."""
    return 128 - rc if rc < 0 else rc


# ── ClusterSetup ─────────────────────────────────────────────────────────────

class ClusterSetup:

    def __init__(self, config: SetupConfig, workdir: Optional[Path] = None,
                 log_dir: Optional[Path] = None):
        self.config = config
        self.workdir = workdir or playbook_dir()
        self.log_dir = log_dir or Path.cwd()
        self.timestamp = datetime.now().strftime(TIMESTAMP_FORMAT)

    @property
    def temp_log(self) -> Path:
        return self.workdir / self.config.temp_log

    @property
    def log_file(self) -> Path:
        return self.log_dir / f"{LOG_PREFIX}-{self.timestamp}.log"

    def check_inventory(self) -> None:
        if not self.config.inventory.exists():
            _error(f"No inventory file could be found at {self.config.inventory}.\n"
                   "Please create one, or specify one manually with -i.")
            sys.exit(EXIT_USAGE)

    def invoke(self) -> int:
        """Run the playbook, teeing combined output to the terminal and log."""
        cmd, env = build_command(self.config, interactive=_stdin_is_tty())
        _info(f"Running: {' '.join(cmd)}")
        sys.stdout.flush()

        with open(self.temp_log, "wb") as log, subprocess.Popen(
            cmd, cwd=self.workdir, env=env,
            stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
        ) as proc:
            for chunk in proc.stdout:
                _echo_raw(chunk)
                log.write(chunk)
            rc = exit_status(proc.wait())

        if rc != 0:
            _warn("Oops!  An error occurred while running setup.")
        else:
            _info("The setup process completed successfully.")
        return rc

    def finalize_log(self) -> Optional[Path]:
        """Copy the transient log to its timestamped name; None on failure."""
        try:
            shutil.copyfile(self.temp_log, self.log_file)
        except OSError as exc:
            _warn(f"Could not save log to {self.log_file}: {exc}")
            _warn(f"Output is still available in {self.temp_log}")
            return None
        self.temp_log.unlink()
        _info(f"{_I.FILE}  Setup log saved to {self.log_file}")
        return self.log_file

    def run(self) -> int:
        _banner(f"{_I.ROCKET}  cluster-setup — {self.config.mode} "
                f"({self.config.playbook})")
        if self.config.override_bundle_install:
            _info(f"{BUNDLE_INSTALL_VAR} set explicitly via -e")

        ensure_engine()
        self.check_inventory()
        rc = self.invoke()
        self.finalize_log()
        return rc


def main(argv: Optional[list] = None) -> None:
    config = parse_args(sys.argv[1:] if argv is None else argv)
    sys.exit(ClusterSetup(config).run())


if __name__ == "__main__":
    main()
