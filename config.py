#!/usr/bin/env python3
"""
Reporter configuration.

ReporterConfig is an immutable record of everything a CollectdReporter needs.
It is validated once, when the reporter is constructed, so an invalid
security setup fails before any network activity.

Typical usage:
    from config import ReporterConfig
    from encryption import SecurityLevel

    config = ReporterConfig(
        collectd_host="collectd.example.com",
        host_name="web-01",
        security_level=SecurityLevel.SIGN,
        username="user0",
        password="secret",
    ).validate()

    # or from a parsed settings file
    config = ReporterConfig.from_dict({"collectd_host": "localhost", "security_level": "encrypt",
                                       "username": "user0", "password": "secret"})
"""

import time
from typing import Dict, Any, Optional, Callable, Mapping, NamedTuple

from encryption import PacketSecurity, SecurityContext, SecurityLevel
from transport import DEFAULT_PORT, DEFAULT_MAX_DATAGRAM_SIZE

__version__ = '1.0.0'
__all__ = ['ReporterConfig', 'ConfigurationError', 'is_valid_host_name']

DEFAULT_PREFIX_QUERY = 'db.query.'
MIN_DATAGRAM_SIZE = 64
# Largest UDP payload over IPv4
MAX_DATAGRAM_SIZE = 65507
MAX_USERNAME_LENGTH = 255
MAX_HOST_NAME_LENGTH = 127


def is_valid_host_name(host_name: Optional[str]) -> bool:
    """Whether host_name fits a collectd HOST part: 1 to 127 ASCII bytes, no NUL."""
    if not host_name or not host_name.isascii() or '\0' in host_name:
        return False
    return len(host_name) <= MAX_HOST_NAME_LENGTH


class ConfigurationError(ValueError):
    """Raised when a reporter configuration is invalid."""
    pass


class ReporterConfig(NamedTuple):
    """
    Immutable reporter configuration.

    Fields:
        collectd_host: Host to send datagrams to; None sends to loopback
        collectd_port: collectd network plugin port
        host_name: Host label reported in every packet; None resolves the
            local host name when the reporter is built
        security_level: NONE, SIGN or ENCRYPT
        username: Required for SIGN and ENCRYPT
        password: Required for SIGN and ENCRYPT
        clock: Zero-argument callable returning epoch seconds
        prefix_query: Prefix of the plugin name of query metrics
        max_datagram_size: Upper bound for each datagram in bytes
        high_resolution_time: Send TIME_HR/INTERVAL_HR parts
    """
    collectd_host: Optional[str] = None
    collectd_port: int = DEFAULT_PORT
    host_name: Optional[str] = None
    security_level: SecurityLevel = SecurityLevel.NONE
    username: str = ''
    password: str = ''
    clock: Callable[[], float] = time.time
    prefix_query: str = DEFAULT_PREFIX_QUERY
    max_datagram_size: int = DEFAULT_MAX_DATAGRAM_SIZE
    high_resolution_time: bool = False

    @classmethod
    def from_dict(cls, settings: Mapping[str, Any]) -> 'ReporterConfig':
        """
        Build and validate a configuration from a mapping.

        The security level may be given by name ("none", "sign", "encrypt").

        Raises:
            ConfigurationError: If a key is unknown or a value is invalid
        """
        unknown = set(settings) - set(cls._fields)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

        values: Dict[str, Any] = dict(settings)
        if 'security_level' in values:
            try:
                values['security_level'] = SecurityLevel.parse(values['security_level'])
            except ValueError as e:
                raise ConfigurationError(str(e)) from None
        return cls(**values).validate()

    def validate(self) -> 'ReporterConfig':
        """
        Check the configuration.

        Returns:
            ReporterConfig: self, so construction and validation can be chained

        Raises:
            ConfigurationError: On missing credentials or out-of-range values
        """
        if not isinstance(self.security_level, SecurityLevel):
            raise ConfigurationError(f"Invalid security level: {self.security_level!r}")
        if self.security_level is not SecurityLevel.NONE:
            if not self.username:
                raise ConfigurationError(f"username is required for security level {self.security_level.name}")
            if not self.password:
                raise ConfigurationError(f"password is required for security level {self.security_level.name}")
            if len(self.username.encode('utf-8')) > MAX_USERNAME_LENGTH:
                raise ConfigurationError(f"username longer than {MAX_USERNAME_LENGTH} bytes")

        if not isinstance(self.collectd_port, int) or not 0 < self.collectd_port < 65536:
            raise ConfigurationError(f"Invalid collectd port: {self.collectd_port!r}")
        if not isinstance(self.max_datagram_size, int) \
                or not MIN_DATAGRAM_SIZE <= self.max_datagram_size <= MAX_DATAGRAM_SIZE:
            raise ConfigurationError(
                f"max_datagram_size must be between {MIN_DATAGRAM_SIZE} and {MAX_DATAGRAM_SIZE}: "
                f"{self.max_datagram_size!r}")
        overhead = PacketSecurity(self.security_context()).overhead
        if self.max_datagram_size - overhead < MIN_DATAGRAM_SIZE:
            raise ConfigurationError(
                f"max_datagram_size {self.max_datagram_size} leaves no room for values "
                f"after {overhead} bytes of {self.security_level.name} overhead")
        if self.host_name is not None and not is_valid_host_name(self.host_name):
            raise ConfigurationError(
                f"host_name must be 1 to {MAX_HOST_NAME_LENGTH} ASCII characters without NUL: {self.host_name!r}")
        if not callable(self.clock):
            raise ConfigurationError("clock must be callable")
        return self

    def security_context(self) -> SecurityContext:
        return SecurityContext(self.security_level, self.username, self.password)
