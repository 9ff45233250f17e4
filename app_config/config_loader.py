from __future__ import annotations

import configparser
import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from middleware.node_list import BrokerNode, ConfigurationError, parse_nodes

DEFAULT_LOG_FILES = {
    "consumer": "/var/log/consumer/messages.log",
    "producer": "/var/log/producer/messages.log",
}


@dataclass(frozen=True)
class BrokerCfg:
    nodes: Tuple[BrokerNode, ...]
    username: str
    password: str
    vhost: str
    connect_timeout: float


@dataclass(frozen=True)
class TimingCfg:
    publish_interval: float
    processing_delay: float
    backoff: float


@dataclass(frozen=True)
class LoggingCfg:
    file: str
    level: str


# (env var, ini section, ini key, default)
_SETTINGS = {
    "hosts": ("RABBITMQ_HOSTS", "broker", "hosts", ""),
    "username": ("RABBITMQ_USER", "broker", "username", "admin"),
    "password": ("RABBITMQ_PASS", "broker", "password", "admin"),
    "vhost": ("RABBITMQ_VHOST", "broker", "vhost", "/"),
    "connect_timeout": ("RABBITMQ_CONNECT_TIMEOUT", "broker", "connect_timeout", "3"),
    "publish_interval": ("PUBLISH_INTERVAL_SECONDS", "timing", "publish_interval", "2"),
    "processing_delay": ("PROCESSING_DELAY_SECONDS", "timing", "processing_delay", "0.5"),
    "backoff": ("RECONNECT_BACKOFF_SECONDS", "timing", "backoff", "3"),
    "log_file": ("LOG_FILE", "logging", "file", None),
    "log_level": ("LOG_LEVEL", "logging", "level", "INFO"),
}


class Config:
    """
    Runtime settings for one role.

    Values come from the environment first, then from an optional INI file,
    then from built-in defaults. Empty environment values count as unset.
    """

    def __init__(
        self,
        role: str,
        ini_path: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.role = role
        self._environ = os.environ if environ is None else environ
        self._parser = configparser.ConfigParser()
        if ini_path:
            self._path = os.path.abspath(ini_path)
            if not os.path.exists(self._path):
                raise ConfigurationError(f"INI file not found: {self._path}")
            self._parser.read(self._path)

        username = self._get("username")
        password = self._get("password")
        if not username or not password:
            raise ConfigurationError("RabbitMQ username and password must not be empty")

        self.broker = BrokerCfg(
            nodes=parse_nodes(self._get("hosts")),
            username=username,
            password=password,
            vhost=self._get("vhost") or "/",
            connect_timeout=self._seconds("connect_timeout"),
        )
        self.timing = TimingCfg(
            publish_interval=self._seconds("publish_interval"),
            processing_delay=self._seconds("processing_delay", allow_zero=True),
            backoff=self._seconds("backoff"),
        )
        self.logging = LoggingCfg(
            file=self._get("log_file") or DEFAULT_LOG_FILES.get(role, f"/var/log/{role}/messages.log"),
            level=(self._get("log_level") or "INFO").upper(),
        )

    def _get(self, name: str) -> Optional[str]:
        env_key, section, key, default = _SETTINGS[name]
        value = self._environ.get(env_key)
        if value:
            return value
        return self._parser.get(section, key, fallback=default)

    def _seconds(self, name: str, allow_zero: bool = False) -> float:
        raw = self._get(name)
        try:
            value = float(raw)
        except (TypeError, ValueError):
            raise ConfigurationError(f"{_SETTINGS[name][0]} must be a number, got {raw!r}") from None
        if value < 0 or (value == 0 and not allow_zero):
            raise ConfigurationError(f"{_SETTINGS[name][0]} must be positive, got {raw!r}")
        return value


def resolve_config_path(environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    environ = os.environ if environ is None else environ
    candidates = [environ.get("CONFIG_PATH"), environ.get("CFG"), "./config.ini"]
    for path in candidates:
        if path and os.path.exists(path):
            return os.path.abspath(path)
    return None
