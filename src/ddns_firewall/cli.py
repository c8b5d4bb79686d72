#!/usr/bin/env python3
"""ddns-firewall - DDNS-driven iptables access rules

Keeps iptables ACCEPT rules in sync with the current IPv4 addresses of a small
set of dynamic-DNS hostnames. Each run resolves every configured hostname,
diffs the wanted rules against the live tagged rules, adds new rules before
removing stale ones, and records the reconciled state in an atomically
written cache. Intended to be started periodically by a systemd timer.

Safety rules:
    - A rule is never removed unless every add in the same pass succeeded.
    - A hostname that fails to resolve keeps its existing rule.
    - Same IP = zero iptables operations.
    - Only rules carrying the DDNS-ACCESS comment are ever touched.
    - One pass at a time (advisory file lock).

Environment variables:

    Paths:
        DDNSFW_CONFIG_PATH     Entries file (default: /etc/ddnsfw/conf.conf)
                               Plain text, one "hostname:port" per line:
                                 # home and office
                                 home.dyndns.org:22
                                 office.ddns.net:5432
                               or YAML when the name ends in .yaml/.yml:
                                 entries:
                                   - hostname: home.dyndns.org
                                     port: 22
        DDNSFW_CACHE_PATH      JSON state cache (default: /etc/ddnsfw/service.cache)
        DDNSFW_LOCK_PATH       Lock file (default: /etc/ddnsfw/.lock)

    Firewall:
        IPTABLES_CHAIN         Chain holding the access rules (default: INPUT)
        IPTABLES_PATH          iptables binary (default: first found of
                               /usr/sbin/iptables, /sbin/iptables, /usr/bin/iptables)

    DNS:
        DNS_NAMESERVERS        Comma-separated nameserver IPs (default: system resolv.conf)

    Runtime:
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)

Exit codes:
    0  sync complete
    1  unexpected fatal error
    2  configuration error
    3  another run holds the lock (cycle skipped)
    4  partial failure, existing rules preserved
"""

from __future__ import annotations

import fcntl
import ipaddress
import json
import logging
import os
import shlex
import shutil
import subprocess
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from ipaddress import IPv4Address
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple, TypeVar, Union

import dns.exception
import dns.resolver
import yaml

# =============================================================================
# Configuration
# =============================================================================

# Paths
CONFIG_PATH = os.getenv("DDNSFW_CONFIG_PATH", "/etc/ddnsfw/conf.conf")
CACHE_PATH = os.getenv("DDNSFW_CACHE_PATH", "/etc/ddnsfw/service.cache")
LOCK_PATH = os.getenv("DDNSFW_LOCK_PATH", "/etc/ddnsfw/.lock")

# Firewall
IPTABLES_CHAIN = os.getenv("IPTABLES_CHAIN", "INPUT").strip() or "INPUT"
IPTABLES_PATH = os.getenv("IPTABLES_PATH", "").strip()
IPTABLES_PATHS = ("/usr/sbin/iptables", "/sbin/iptables", "/usr/bin/iptables")
IPTABLES_COMMENT = "DDNS-ACCESS"

# DNS
DNS_NAMESERVERS = os.getenv("DNS_NAMESERVERS", "")

# Runtime
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Fixed bounds
DNS_TIMEOUT_SECONDS = 10.0
LOCK_TIMEOUT_SECONDS = 30.0
IPTABLES_TIMEOUT_SECONDS = 15.0
MAX_ENTRIES = 100
MAX_RULES = 100
MAX_LOOP_ITERATIONS = 200
MAX_HOSTNAME_LENGTH = 255

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Errors
# =============================================================================


class DDNSFirewallError(Exception):
    """Base class for errors raised inside a reconciliation pass."""


class ConfigError(DDNSFirewallError):
    """The entries file is missing or malformed."""


class ConfigLimitExceeded(ConfigError):
    """More entries than MAX_ENTRIES were configured."""


class LockTimeout(DDNSFirewallError):
    """Another pass held the run lock for longer than the wait bound."""


class FirewallError(DDNSFirewallError):
    """The firewall backend could not be used."""


class FirewallListError(FirewallError):
    """Listing the tagged rules failed."""


class FirewallAddFailure(FirewallError):
    """A rule could not be inserted; the pass stops before any removal."""


class CacheWriteFailure(DDNSFirewallError):
    """The state cache could not be persisted."""


class LoopLimitExceeded(DDNSFirewallError):
    """A per-run loop went past MAX_LOOP_ITERATIONS."""


# =============================================================================
# Enums
# =============================================================================


class SyncOutcome(Enum):
    """Result of one reconciliation pass, mapped to a stable exit code."""

    SUCCESS = 0
    FATAL = 1
    CONFIG_ERROR = 2
    BUSY = 3
    PARTIAL = 4

    @property
    def exit_code(self) -> int:
        return self.value


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class ConfigEntry:
    """A hostname whose current address should be allowed on a TCP port."""

    hostname: str
    port: int

    def __str__(self) -> str:
        return f"{self.hostname}:{self.port}"


@dataclass(frozen=True)
class ResolutionFailure:
    """Why a hostname produced no address this run."""

    hostname: str
    reason: str


@dataclass(frozen=True)
class ResolvedEntry:
    """A config entry with the address it resolved to, or None on failure."""

    hostname: str
    port: int
    ip: Optional[IPv4Address] = None

    @property
    def key(self) -> Tuple[str, int]:
        return (self.hostname, self.port)


@dataclass(frozen=True)
class Rule:
    """A tagged ACCEPT rule. Identity is the (ip, port) pair."""

    ip: IPv4Address
    port: int
    tag: str = field(default=IPTABLES_COMMENT, compare=False)

    def __str__(self) -> str:
        return f"{self.ip}:{self.port}"


@dataclass
class CacheState:
    """Last fully reconciled state, as persisted between runs."""

    generation: int = 0
    entries: Dict[Tuple[str, int], IPv4Address] = field(default_factory=dict)
    rules: Set[Rule] = field(default_factory=set)
    updated_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": 1,
            "generation": self.generation,
            "updated_at": self.updated_at,
            "entries": {f"{h}:{p}": str(ip) for (h, p), ip in self.entries.items()},
            "rules": sorted(str(r) for r in self.rules),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheState":
        raw_entries = data.get("entries") or {}
        raw_rules = data.get("rules") or []
        if not isinstance(raw_entries, dict):
            raise ValueError("'entries' is not an object")
        if not isinstance(raw_rules, list):
            raise ValueError("'rules' is not a list")

        entries: Dict[Tuple[str, int], IPv4Address] = {}
        for key, ip in raw_entries.items():
            hostname, _, port = str(key).rpartition(":")
            try:
                entries[(hostname, int(port))] = IPv4Address(ip)
            except ValueError:
                logger.warning(f"Skipping malformed cache entry: {key} -> {ip}")

        rules: Set[Rule] = set()
        for item in raw_rules:
            rule = parse_ip_port(str(item))
            if rule is None:
                logger.warning(f"Skipping malformed cached rule: {item}")
                continue
            rules.add(rule)

        return cls(
            generation=int(data.get("generation", 0)),
            entries=entries,
            rules=rules,
            updated_at=float(data.get("updated_at", 0.0)),
        )


@dataclass
class SyncReport:
    """What a pass did, for logging and the process exit code."""

    outcome: SyncOutcome = SyncOutcome.SUCCESS
    added: List[Rule] = field(default_factory=list)
    removed: List[Rule] = field(default_factory=list)
    failed_removals: List[Rule] = field(default_factory=list)
    unresolved: List[ResolutionFailure] = field(default_factory=list)
    message: str = ""

    @property
    def mutations(self) -> int:
        return len(self.added) + len(self.removed)


# =============================================================================
# Utility Functions
# =============================================================================

T = TypeVar("T")


def bounded(items: Iterable[T], what: str, limit: int = MAX_LOOP_ITERATIONS) -> Iterator[T]:
    """Yield from items, raising LoopLimitExceeded past `limit` iterations."""
    for count, item in enumerate(items, start=1):
        if count > limit:
            raise LoopLimitExceeded(f"Loop protection triggered while {what} (>{limit})")
        yield item


def parse_ip_port(value: str) -> Optional[Rule]:
    """Parse "1.2.3.4:22" into a Rule, or None if malformed."""
    value = value.strip()
    ip_str, sep, port_str = value.rpartition(":")
    if not sep:
        return None
    try:
        ip = IPv4Address(ip_str)
        port = int(port_str)
    except ValueError:
        return None
    if not 1 <= port <= 65535:
        return None
    return Rule(ip=ip, port=port)


def _validate_entry(hostname: Any, port: Any, where: str) -> ConfigEntry:
    hostname = str(hostname or "").strip()
    if not hostname:
        raise ConfigError(f"{where}: empty hostname")
    if any(c.isspace() for c in hostname):
        raise ConfigError(f"{where}: hostname '{hostname}' contains whitespace")
    if len(hostname) > MAX_HOSTNAME_LENGTH:
        raise ConfigError(f"{where}: hostname longer than {MAX_HOSTNAME_LENGTH} characters")

    if isinstance(port, bool):
        raise ConfigError(f"{where}: invalid port {port!r}")
    try:
        port_num = int(str(port).strip())
    except ValueError:
        raise ConfigError(f"{where}: invalid port {port!r}") from None
    if not 1 <= port_num <= 65535:
        raise ConfigError(f"{where}: port {port_num} out of range 1-65535")

    return ConfigEntry(hostname=hostname, port=port_num)


def _parse_text_entries(content: str, source: str) -> List[ConfigEntry]:
    entries: List[ConfigEntry] = []
    for lineno, raw_line in enumerate(content.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        hostname, sep, port = line.rpartition(":")
        if not sep:
            raise ConfigError(f"{source}:{lineno}: expected 'hostname:port', got '{line}'")
        entries.append(_validate_entry(hostname, port, f"{source}:{lineno}"))
    return entries


def _parse_yaml_entries(content: str, source: str) -> List[ConfigEntry]:
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(f"{source}: invalid YAML: {e}") from e

    if not data:
        return []
    if not isinstance(data, dict) or not isinstance(data.get("entries", []), list):
        raise ConfigError(f"{source}: expected a mapping with an 'entries' list")

    entries: List[ConfigEntry] = []
    for index, item in enumerate(data.get("entries") or []):
        where = f"{source}: entries[{index}]"
        if not isinstance(item, dict):
            raise ConfigError(f"{where}: expected a mapping with hostname and port")
        entries.append(_validate_entry(item.get("hostname"), item.get("port"), where))
    return entries


def load_config_entries(config_path: str) -> List[ConfigEntry]:
    """Load and validate the configured entries.

    Args:
        config_path: Path to a "hostname:port" text file or a YAML file

    Returns:
        Entries in file order with exact duplicates removed

    Raises:
        ConfigError: file unreadable or any entry malformed
        ConfigLimitExceeded: more than MAX_ENTRIES entries
    """
    path = Path(config_path)
    try:
        content = path.read_text("utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e

    if path.suffix.lower() in (".yaml", ".yml"):
        parsed = _parse_yaml_entries(content, str(path))
    else:
        parsed = _parse_text_entries(content, str(path))

    if len(parsed) > MAX_ENTRIES:
        raise ConfigLimitExceeded(
            f"{path}: {len(parsed)} entries configured, at most {MAX_ENTRIES} allowed"
        )

    entries: List[ConfigEntry] = []
    seen: Set[ConfigEntry] = set()
    for entry in parsed:
        if entry in seen:
            logger.debug(f"Ignoring duplicate config entry {entry}")
            continue
        seen.add(entry)
        entries.append(entry)
    return entries


def _parse_nameservers(value: str) -> List[str]:
    """Parse a comma-separated nameserver list, dropping invalid addresses."""
    servers: List[str] = []
    for raw_item in value.split(","):
        item = raw_item.strip()
        if not item:
            continue
        try:
            ipaddress.ip_address(item)
        except ValueError:
            logger.warning(f"Ignoring invalid nameserver '{item}'")
            continue
        servers.append(item)
    return servers


# =============================================================================
# Resolver Interface and Implementations
# =============================================================================


class Resolver(ABC):
    """Abstract base class for hostname resolvers."""

    @abstractmethod
    def resolve(self, hostname: str) -> Union[IPv4Address, ResolutionFailure]:
        """Return one IPv4 address for hostname, or a ResolutionFailure.

        Must not raise for lookup errors.
        """
        pass


class DNSPythonResolver(Resolver):
    """A-record lookups through dnspython, bounded by a per-hostname lifetime."""

    def __init__(
        self,
        timeout_seconds: float = DNS_TIMEOUT_SECONDS,
        nameservers: Optional[List[str]] = None,
        resolver: Optional[dns.resolver.Resolver] = None,
    ):
        self._timeout = timeout_seconds
        if resolver is not None:
            self._resolver = resolver
        elif nameservers:
            self._resolver = dns.resolver.Resolver(configure=False)
            self._resolver.nameservers = list(nameservers)
        else:
            self._resolver = dns.resolver.Resolver()

    def resolve(self, hostname: str) -> Union[IPv4Address, ResolutionFailure]:
        try:
            return IPv4Address(hostname)
        except ValueError:
            pass

        try:
            answer = self._resolver.resolve(hostname, "A", lifetime=self._timeout)
        except dns.resolver.NXDOMAIN:
            return ResolutionFailure(hostname, "NXDOMAIN")
        except dns.resolver.NoAnswer:
            return ResolutionFailure(hostname, "no A record")
        except dns.exception.Timeout:
            return ResolutionFailure(hostname, f"timed out after {self._timeout:g}s")
        except dns.exception.DNSException as e:
            return ResolutionFailure(hostname, str(e) or type(e).__name__)

        for rdata in answer:
            try:
                return IPv4Address(str(rdata.address))
            except (AttributeError, ValueError):
                continue
        return ResolutionFailure(hostname, "no usable A record")


# =============================================================================
# Firewall Adapter Interface and Implementations
# =============================================================================


class FirewallAdapter(ABC):
    """Abstract base class for firewalls holding tagged access rules."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the firewall name for logging."""
        pass

    @abstractmethod
    def list_tagged(self) -> Set[Rule]:
        """Return the live rules carrying our tag.

        Raises FirewallListError if the rules cannot be listed.
        """
        pass

    @abstractmethod
    def add_rule(self, ip: IPv4Address, port: int) -> bool:
        """Insert an access rule. An already present rule counts as success."""
        pass

    @abstractmethod
    def remove_rule(self, ip: IPv4Address, port: int) -> bool:
        """Delete an access rule. An already absent rule counts as success."""
        pass


def find_iptables() -> Optional[str]:
    """Locate the iptables binary."""
    if IPTABLES_PATH:
        return IPTABLES_PATH if os.path.exists(IPTABLES_PATH) else None
    for candidate in IPTABLES_PATHS:
        if os.path.exists(candidate):
            return candidate
    return shutil.which("iptables")


class IptablesFirewall(FirewallAdapter):
    """iptables backend: tagged ACCEPT rules in a single chain."""

    ADD_ATTEMPTS = 2

    def __init__(
        self,
        binary: str,
        chain: str = "INPUT",
        comment: str = IPTABLES_COMMENT,
        timeout_seconds: float = IPTABLES_TIMEOUT_SECONDS,
    ):
        self._binary = binary
        self._chain = chain
        self._comment = comment
        self._timeout = timeout_seconds

    @property
    def name(self) -> str:
        return f"iptables ({self._chain})"

    def _rule_spec(self, ip: IPv4Address, port: int) -> List[str]:
        return [
            "-s", f"{ip}/32",
            "-p", "tcp",
            "-m", "tcp",
            "--dport", str(port),
            "-m", "comment",
            "--comment", self._comment,
            "-j", "ACCEPT",
        ]

    def _run(self, args: List[str]) -> subprocess.CompletedProcess:
        return subprocess.run(
            [self._binary, *args],
            capture_output=True,
            text=True,
            timeout=self._timeout,
            check=False,
        )

    def _succeeds(self, args: List[str]) -> bool:
        try:
            result = self._run(args)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"iptables {' '.join(args[:2])} failed: {e}")
            return False
        if result.returncode != 0 and result.stderr:
            logger.debug(f"iptables {' '.join(args[:2])}: {result.stderr.strip()}")
        return result.returncode == 0

    def rule_exists(self, ip: IPv4Address, port: int) -> bool:
        return self._succeeds(["-C", self._chain, *self._rule_spec(ip, port)])

    def list_tagged(self) -> Set[Rule]:
        try:
            result = self._run(["-S", self._chain])
        except (OSError, subprocess.TimeoutExpired) as e:
            raise FirewallListError(f"Cannot list {self.name}: {e}") from e
        if result.returncode != 0:
            raise FirewallListError(
                f"Cannot list {self.name}: {result.stderr.strip() or result.returncode}"
            )

        tagged_lines = (line for line in result.stdout.splitlines() if self._comment in line)
        rules: Set[Rule] = set()
        try:
            for line in bounded(tagged_lines, f"listing {self.name}"):
                rule = self._parse_rule_line(line)
                if rule is not None:
                    rules.add(rule)
        except LoopLimitExceeded as e:
            raise FirewallListError(str(e)) from e
        return rules

    def _parse_rule_line(self, line: str) -> Optional[Rule]:
        try:
            parts = shlex.split(line)
        except ValueError:
            logger.warning(f"Skipping unparsable iptables line: {line}")
            return None

        options: Dict[str, str] = {}
        for flag, value in zip(parts, parts[1:]):
            if flag in ("-s", "-p", "--dport", "--comment", "-j") and flag not in options:
                options[flag] = value

        if options.get("--comment") != self._comment:
            return None
        if options.get("-p") != "tcp" or options.get("-j") != "ACCEPT":
            logger.warning(f"Ignoring tagged rule that is not a tcp ACCEPT: {line}")
            return None
        try:
            ip = IPv4Address(options.get("-s", "").split("/")[0])
            port = int(options.get("--dport", ""))
        except ValueError:
            logger.warning(f"Skipping tagged rule without source/port: {line}")
            return None
        return Rule(ip=ip, port=port, tag=self._comment)

    def add_rule(self, ip: IPv4Address, port: int) -> bool:
        if self.rule_exists(ip, port):
            logger.debug(f"Rule {ip}:{port} already present")
            return True
        for attempt in range(1, self.ADD_ATTEMPTS + 1):
            if self._succeeds(["-I", self._chain, "1", *self._rule_spec(ip, port)]):
                return True
            logger.warning(f"Insert of {ip}:{port} failed (attempt {attempt}/{self.ADD_ATTEMPTS})")
        return False

    def remove_rule(self, ip: IPv4Address, port: int) -> bool:
        if not self.rule_exists(ip, port):
            logger.debug(f"Rule {ip}:{port} already absent")
            return True
        return self._succeeds(["-D", self._chain, *self._rule_spec(ip, port)])


# =============================================================================
# Provider Factories
# =============================================================================


def create_firewall() -> FirewallAdapter:
    """Factory function to create the iptables firewall adapter."""
    binary = find_iptables()
    if binary is None:
        raise ConfigError("iptables not found (install iptables or set IPTABLES_PATH)")
    return IptablesFirewall(binary, chain=IPTABLES_CHAIN)


def create_resolver() -> Resolver:
    """Factory function to create the DNS resolver."""
    return DNSPythonResolver(nameservers=_parse_nameservers(DNS_NAMESERVERS) or None)


# =============================================================================
# State Management
# =============================================================================


class StateCache:
    """Durable record of the last reconciled state.

    The file is replaced whole via a temp file and os.replace, so a crash
    leaves either the previous or the new snapshot on disk.
    """

    def __init__(self, path: str):
        self.path = Path(path)

    def load(self) -> CacheState:
        if not self.path.exists():
            return CacheState()
        try:
            data = json.loads(self.path.read_text("utf-8"))
            if not isinstance(data, dict):
                raise ValueError("top level is not an object")
            return CacheState.from_dict(data)
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Failed to load state cache {self.path}: {e}")
            return CacheState()

    def save(self, state: CacheState) -> None:
        content = json.dumps(state.to_dict(), indent=2, sort_keys=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
            self._fsync_dir()
        except OSError as e:
            try:
                tmp_path.unlink()
            except OSError:
                pass
            raise CacheWriteFailure(f"Failed to write state cache {self.path}: {e}") from e

    def _fsync_dir(self) -> None:
        try:
            dir_fd = os.open(self.path.parent, os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(dir_fd)
        except OSError:
            pass
        finally:
            os.close(dir_fd)


# =============================================================================
# Run Lock
# =============================================================================


class RunLock:
    """Exclusive advisory lock serialising reconciliation passes.

    A second instance polls for the lock and gives up with LockTimeout once
    `timeout_seconds` have passed. The kernel drops the flock if the holder
    dies.
    """

    def __init__(
        self,
        path: str,
        timeout_seconds: float = LOCK_TIMEOUT_SECONDS,
        poll_interval: float = 0.5,
    ):
        self.path = Path(path)
        self.timeout = timeout_seconds
        self.poll_interval = poll_interval
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT, 0o600)
        deadline = time.monotonic() + self.timeout
        waiting_logged = False
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                self._fd = fd
                return
            except BlockingIOError:
                pass
            except OSError:
                os.close(fd)
                raise

            if time.monotonic() >= deadline:
                os.close(fd)
                raise LockTimeout(
                    f"Timed out after {self.timeout:g}s waiting for {self.path} "
                    "(another instance running too long)"
                )
            if not waiting_logged:
                logger.info("Another instance is running, waiting...")
                waiting_logged = True
            time.sleep(self.poll_interval)

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


# =============================================================================
# Core Syncer
# =============================================================================


class FirewallSyncer:
    def __init__(
        self,
        *,
        entries: List[ConfigEntry],
        resolver: Resolver,
        firewall: FirewallAdapter,
        state_cache: StateCache,
        lock: RunLock,
    ):
        self.entries = entries
        self.resolver = resolver
        self.firewall = firewall
        self.state_cache = state_cache
        self.lock = lock

    def sync_once(self) -> SyncReport:
        """Run one reconciliation pass and report how it ended."""
        report = SyncReport()

        if len(self.entries) > MAX_ENTRIES:
            report.outcome = SyncOutcome.CONFIG_ERROR
            report.message = f"{len(self.entries)} entries configured, at most {MAX_ENTRIES} allowed"
            logger.error(report.message)
            return report

        if not self.entries:
            report.message = "No entries in config"
            logger.info(report.message)
            return report

        try:
            with self.lock:
                self._sync_locked(report)
        except LockTimeout as e:
            report.outcome = SyncOutcome.BUSY
            report.message = str(e)
            logger.warning(f"Skipping this cycle: {e}")
        except (FirewallError, LoopLimitExceeded) as e:
            report.outcome = SyncOutcome.PARTIAL
            report.message = str(e)
            logger.error(f"Sync aborted, existing rules preserved: {e}")

        return report

    def _sync_locked(self, report: SyncReport) -> None:
        cache = self.state_cache.load()
        logger.info(f"Syncing {len(self.entries)} entries...")

        resolved = self._resolve_all(report)
        actual = self.firewall.list_tagged()
        if len(actual) > MAX_LOOP_ITERATIONS:
            raise LoopLimitExceeded(f"{self.firewall.name} returned {len(actual)} tagged rules")
        self._diagnose(cache, actual)

        desired = {Rule(r.ip, r.port) for r in resolved if r.ip is not None}
        protected = self._protected_rules(resolved, cache, actual)
        to_add = desired - actual
        to_remove = actual - desired - protected

        if not to_add and not to_remove:
            logger.info("All rules up to date (no change)")
        else:
            logger.info(f"Plan: {len(to_add)} to add, {len(to_remove)} to remove")

        self._apply_adds(to_add, actual, report)
        self._apply_removes(to_remove, report)

        live = (actual | set(report.added)) - set(report.removed)
        new_cache = CacheState(
            generation=cache.generation + 1,
            entries=self._cache_entries(resolved, cache),
            rules=live,
            updated_at=time.time(),
        )
        try:
            self.state_cache.save(new_cache)
        except CacheWriteFailure as e:
            report.outcome = SyncOutcome.PARTIAL
            report.message = str(e)
            logger.error(f"{e} (firewall rules are already applied)")

        if report.failed_removals and report.outcome == SyncOutcome.SUCCESS:
            report.outcome = SyncOutcome.PARTIAL
            report.message = f"{len(report.failed_removals)} stale rule(s) could not be removed"

        logger.info(
            f"Sync complete: {len(report.added)} added, {len(report.removed)} removed, "
            f"{len(report.unresolved)} unresolved"
        )

    def _resolve_all(self, report: SyncReport) -> List[ResolvedEntry]:
        resolved: List[ResolvedEntry] = []
        for entry in bounded(self.entries, "resolving entries"):
            result = self.resolver.resolve(entry.hostname)
            if isinstance(result, ResolutionFailure):
                report.unresolved.append(result)
                logger.warning(f"{entry} -> SKIP ({result.reason}, keeping existing)")
                resolved.append(ResolvedEntry(entry.hostname, entry.port, None))
                continue
            logger.info(f"{entry} -> {result}")
            resolved.append(ResolvedEntry(entry.hostname, entry.port, result))
        return resolved

    def _protected_rules(
        self, resolved: List[ResolvedEntry], cache: CacheState, actual: Set[Rule]
    ) -> Set[Rule]:
        """Live rules that must survive because their hostname did not resolve.

        The cache may lag the firewall (failed persist, crash before persist),
        so every live rule on the entry's port is kept, plus the cached address.
        """
        protected: Set[Rule] = set()
        for entry in resolved:
            if entry.ip is not None:
                continue
            protected.update(r for r in actual if r.port == entry.port)
            last_ip = cache.entries.get(entry.key)
            if last_ip is not None:
                protected.add(Rule(last_ip, entry.port))
        return protected

    def _apply_adds(self, to_add: Set[Rule], actual: Set[Rule], report: SyncReport) -> None:
        if not to_add:
            return
        if len(actual) + len(to_add) > MAX_RULES:
            raise FirewallAddFailure(
                f"Adding {len(to_add)} rule(s) to {len(actual)} live would exceed "
                f"the {MAX_RULES} rule ceiling"
            )
        for rule in bounded(sorted(to_add, key=_rule_sort_key), "adding rules"):
            if not self.firewall.add_rule(rule.ip, rule.port):
                raise FirewallAddFailure(f"Failed to add rule {rule}")
            report.added.append(rule)
            logger.info(f"Added rule {rule}")

    def _apply_removes(self, to_remove: Set[Rule], report: SyncReport) -> None:
        for rule in bounded(sorted(to_remove, key=_rule_sort_key), "removing rules"):
            if self.firewall.remove_rule(rule.ip, rule.port):
                report.removed.append(rule)
                logger.info(f"Removed old rule {rule}")
            else:
                report.failed_removals.append(rule)
                logger.error(f"Failed to remove rule {rule} (rule remains)")

    def _cache_entries(
        self, resolved: List[ResolvedEntry], cache: CacheState
    ) -> Dict[Tuple[str, int], IPv4Address]:
        entries: Dict[Tuple[str, int], IPv4Address] = {}
        for entry in resolved:
            if entry.ip is not None:
                entries[entry.key] = entry.ip
            elif entry.key in cache.entries:
                entries[entry.key] = cache.entries[entry.key]
        return entries

    def _diagnose(self, cache: CacheState, actual: Set[Rule]) -> None:
        """Log signs that a previous pass was interrupted. Never changes the plan."""
        if cache.generation == 0:
            logger.debug("No previous state cache (first run)")
            return
        for (hostname, port), ip in sorted(cache.entries.items()):
            if Rule(ip, port) not in actual:
                logger.warning(
                    f"Cached rule {ip}:{port} for {hostname} is not live; previous run may "
                    "have been interrupted, or the rule was removed externally"
                )
        for rule in sorted(actual - cache.rules, key=_rule_sort_key):
            logger.info(
                f"Live rule {rule} is not in the state cache; left by an interrupted run "
                "or added by hand"
            )


def _rule_sort_key(rule: Rule) -> Tuple[int, int]:
    return (int(rule.ip), rule.port)


# =============================================================================
# Main
# =============================================================================


def validate_config() -> bool:
    """Validate the runtime environment."""
    errors = []

    if os.geteuid() != 0:
        errors.append("Must run as root")

    if find_iptables() is None:
        errors.append(
            "iptables not found! Install it first "
            "(Ubuntu/Debian: apt install iptables, CentOS/RHEL: yum install iptables) "
            "or set IPTABLES_PATH"
        )

    if not Path(CONFIG_PATH).is_file():
        errors.append(f"Config file not found: {CONFIG_PATH}")

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


def main():
    """Main entry point."""
    logger.info(f"ddns-firewall: {CONFIG_PATH} -> iptables {IPTABLES_CHAIN}")

    if not validate_config():
        logger.error("Configuration validation failed")
        sys.exit(SyncOutcome.CONFIG_ERROR.exit_code)

    try:
        entries = load_config_entries(CONFIG_PATH)
        firewall = create_firewall()
        resolver = create_resolver()
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(SyncOutcome.CONFIG_ERROR.exit_code)
    except dns.exception.DNSException as e:
        logger.error(f"Cannot configure DNS resolver: {e}")
        sys.exit(SyncOutcome.CONFIG_ERROR.exit_code)

    logger.info(f"Firewall: {firewall.name}")

    syncer = FirewallSyncer(
        entries=entries,
        resolver=resolver,
        firewall=firewall,
        state_cache=StateCache(CACHE_PATH),
        lock=RunLock(LOCK_PATH, timeout_seconds=LOCK_TIMEOUT_SECONDS),
    )

    try:
        report = syncer.sync_once()
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(SyncOutcome.FATAL.exit_code)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(SyncOutcome.FATAL.exit_code)

    sys.exit(report.outcome.exit_code)


if __name__ == "__main__":
    main()
