"""
bitcoind RPC credential resolution.

Credentials are looked up once at startup, trying each source in order and
stopping at the first hit:

1. Explicit ``smaug_brpc_user`` + ``smaug_brpc_pass``
2. Explicit ``smaug_brpc_cookie_dir`` (``<dir>/.cookie``)
3. ``bitcoin-rpc*`` options reported by the host node (``listconfigs``)
4. Cookie file at the standard path for the network
5. ``rpcuser``/``rpcpassword`` in ``~/.bitcoin/bitcoin.conf``
6. Nothing found: start unconfigured and say how to fix it

Tiers 1 and 2 fail fast on inconsistent configuration, the others simply
fall through.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger

from smaug.bitcoin import NetworkType, get_default_rpc_port, parse_network
from smaug.errors import CredentialError

UNCONFIGURED_HELP = """No bitcoind RPC credentials found. Smaug will start but cannot function
until configured.

To configure bitcoind access, use one of these methods:

1. Set explicit credentials in the node config:
   smaug_brpc_user=<rpcuser>
   smaug_brpc_pass=<rpcpassword>
   smaug_brpc_port=<port>  # optional, defaults based on network

2. Point to cookie file directory:
   smaug_brpc_cookie_dir=/path/to/bitcoin/datadir

3. Ensure the node has bitcoin-rpcuser/bitcoin-rpcpassword set

4. Use standard cookie file location (~/.bitcoin/[network]/.cookie)

5. Add rpcuser/rpcpassword to ~/.bitcoin/bitcoin.conf"""

# Data directory subfolder bitcoind uses per network
COOKIE_SUBDIRS = {
    NetworkType.BITCOIN: "",
    NetworkType.TESTNET: "testnet3",
    NetworkType.REGTEST: "regtest",
    NetworkType.SIGNET: "signet",
}

# bitcoin.conf section names per network
CONF_SECTIONS = {
    NetworkType.BITCOIN: "main",
    NetworkType.TESTNET: "test",
    NetworkType.REGTEST: "regtest",
    NetworkType.SIGNET: "signet",
}


@dataclass(frozen=True)
class UserPassAuth:
    user: str
    password: str

    def credentials(self) -> tuple[str, str]:
        return self.user, self.password

    def describe(self) -> str:
        return f"user {self.user}"


@dataclass(frozen=True)
class CookieAuth:
    """Cookie file auth; the file is re-read because bitcoind rewrites it on restart."""

    path: Path

    def credentials(self) -> tuple[str, str]:
        try:
            content = self.path.read_text(encoding="utf-8").strip()
        except OSError as e:
            raise CredentialError(f"Cannot read cookie file {self.path}: {e}") from e
        user, sep, password = content.partition(":")
        if not sep:
            raise CredentialError(f"Malformed cookie file {self.path}")
        return user, password

    def describe(self) -> str:
        return f"cookie {self.path}"


@dataclass(frozen=True)
class BrpcConfig:
    """Resolved bitcoind connection."""

    host: str
    port: int
    auth: UserPassAuth | CookieAuth
    source: str

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"


@dataclass(frozen=True)
class Unconfigured:
    message: str


@dataclass(frozen=True)
class ResolverInput:
    """Everything the resolver looks at."""

    network: NetworkType
    host: str = "127.0.0.1"
    port: int | None = None
    user: str | None = None
    password: str | None = None
    cookie_dir: Path | None = None
    host_configs: Mapping[str, Any] | None = None
    bitcoin_dir: Path | None = None

    def resolve_port(self, override: int | None = None) -> int:
        if override is not None:
            return override
        if self.port is not None:
            return self.port
        return get_default_rpc_port(self.network)

    def get_bitcoin_dir(self) -> Path:
        return self.bitcoin_dir if self.bitcoin_dir is not None else Path.home() / ".bitcoin"


def _from_explicit_userpass(inp: ResolverInput) -> BrpcConfig | None:
    if inp.user is None:
        return None
    if inp.password is None:
        raise CredentialError("specified `smaug_brpc_user` but did not specify `smaug_brpc_pass`")
    return BrpcConfig(
        host=inp.host,
        port=inp.resolve_port(),
        auth=UserPassAuth(inp.user, inp.password),
        source="smaug_brpc_user/smaug_brpc_pass",
    )


def _from_cookie_dir(inp: ResolverInput) -> BrpcConfig | None:
    if inp.cookie_dir is None:
        return None
    cookie_path = Path(inp.cookie_dir).expanduser() / ".cookie"
    if not cookie_path.exists():
        raise CredentialError(
            f"Nonexistent cookie file specified in smaug_brpc_cookie_dir: {cookie_path}"
        )
    return BrpcConfig(
        host=inp.host,
        port=inp.resolve_port(),
        auth=CookieAuth(cookie_path),
        source="smaug_brpc_cookie_dir",
    )


def parse_listconfigs(configs: Mapping[str, Any]) -> dict[str, Any]:
    """
    Extract bitcoin-rpc* options from a ``listconfigs`` result.

    Args:
        configs: The ``listconfigs`` result (with a ``configs`` mapping)

    Returns:
        Dict with any of ``user``, ``password``, ``host``, ``port``
    """
    entries = configs.get("configs")
    if not isinstance(entries, Mapping):
        logger.debug("listconfigs response missing 'configs'")
        return {}

    def value(name: str, kind: str) -> Any:
        entry = entries.get(name)
        if isinstance(entry, Mapping):
            return entry.get(kind)
        return None

    found = {
        "user": value("bitcoin-rpcuser", "value_str"),
        "password": value("bitcoin-rpcpassword", "value_str"),
        "host": value("bitcoin-rpcconnect", "value_str"),
        "port": value("bitcoin-rpcport", "value_int"),
    }
    return {k: v for k, v in found.items() if v is not None}


def _from_host_node(inp: ResolverInput) -> BrpcConfig | None:
    if inp.host_configs is None:
        return None
    found = parse_listconfigs(inp.host_configs)
    if "user" not in found or "password" not in found:
        logger.debug("No bitcoin-rpcuser/password reported by the host node")
        return None
    host = found.get("host", inp.host)
    port = inp.resolve_port(found.get("port"))
    logger.debug(f"Found bitcoin-rpcuser/password in listconfigs, host={host}, port={port}")
    return BrpcConfig(
        host=host,
        port=port,
        auth=UserPassAuth(found["user"], found["password"]),
        source="host node listconfigs",
    )


def standard_cookie_path(bitcoin_dir: Path, network: NetworkType) -> Path:
    """Where bitcoind writes its cookie for ``network``."""
    subdir = COOKIE_SUBDIRS[network.chain_params]
    return (bitcoin_dir / subdir if subdir else bitcoin_dir) / ".cookie"


def _from_standard_cookie(inp: ResolverInput) -> BrpcConfig | None:
    cookie_path = standard_cookie_path(inp.get_bitcoin_dir(), inp.network)
    if not cookie_path.exists():
        logger.debug(f"Cookie file not found at standard path: {cookie_path}")
        return None
    logger.debug(f"Found cookie file at: {cookie_path}")
    return BrpcConfig(
        host=inp.host,
        port=inp.resolve_port(),
        auth=CookieAuth(cookie_path),
        source="standard cookie path",
    )


def parse_bitcoin_conf(content: str, network: str | NetworkType) -> dict[str, str]:
    """
    Parse bitcoin.conf, letting the network's section override global values.

    Args:
        content: File content
        network: Active network

    Returns:
        Effective key/value pairs for the network
    """
    target_section = CONF_SECTIONS[parse_network(network).chain_params]
    global_values: dict[str, str] = {}
    section_values: dict[str, str] = {}
    current_section: str | None = None

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("[") and line.endswith("]"):
            current_section = line[1:-1]
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        if current_section is None:
            global_values[key.strip()] = value.strip()
        elif current_section == target_section:
            section_values[key.strip()] = value.strip()

    global_values.update(section_values)
    return global_values


def _from_bitcoin_conf(inp: ResolverInput) -> BrpcConfig | None:
    conf_path = inp.get_bitcoin_dir() / "bitcoin.conf"
    if not conf_path.exists():
        logger.debug(f"bitcoin.conf not found at: {conf_path}")
        return None
    try:
        content = conf_path.read_text(encoding="utf-8")
    except OSError as e:
        logger.debug(f"Could not read bitcoin.conf: {e}")
        return None

    parsed = parse_bitcoin_conf(content, inp.network)
    user = parsed.get("rpcuser")
    password = parsed.get("rpcpassword")
    if user is None or password is None:
        logger.debug("No rpcuser/rpcpassword found in bitcoin.conf")
        return None

    conf_port = parsed.get("rpcport")
    return BrpcConfig(
        host=parsed.get("rpcconnect", inp.host),
        port=inp.resolve_port(int(conf_port) if conf_port and conf_port.isdigit() else None),
        auth=UserPassAuth(user, password),
        source=str(conf_path),
    )


RESOLVERS: tuple[Callable[[ResolverInput], BrpcConfig | None], ...] = (
    _from_explicit_userpass,
    _from_cookie_dir,
    _from_host_node,
    _from_standard_cookie,
    _from_bitcoin_conf,
)


def resolve_brpc_config(inp: ResolverInput) -> BrpcConfig | Unconfigured:
    """
    Resolve bitcoind credentials.

    Args:
        inp: Configuration and filesystem locations to consult

    Returns:
        BrpcConfig from the first tier that matched, or Unconfigured

    Raises:
        CredentialError: If explicit options are inconsistent
    """
    for resolver in RESOLVERS:
        config = resolver(inp)
        if config is not None:
            logger.info(
                f"Using bitcoind at {config.url} ({config.auth.describe()}, from {config.source})"
            )
            return config

    logger.warning(UNCONFIGURED_HELP)
    return Unconfigured(UNCONFIGURED_HELP)
