#!/usr/bin/env python3
"""
Name sanitization for the collectd reporter.

The collectd network protocol restricts plugin, type and instance names to
short ASCII strings. These helpers turn arbitrary metric names into names the
protocol accepts. They never raise and always return a usable name.

Typical usage:
    from sanitize import sanitize_name, sanitize_instance_name

    plugin = sanitize_name("db.query.SqlQuery.findCustomer")
    type_instance = sanitize_instance_name("/count/")
"""

import re

__version__ = '1.0.0'
__all__ = ['sanitize_name', 'sanitize_instance_name', 'MAX_NAME_LENGTH', 'DEFAULT_NAME']

# collectd's DATA_MAX_NAME_LEN is 64 including the terminating null byte
MAX_NAME_LENGTH = 63
DEFAULT_NAME = 'default'

_ILLEGAL_CHARS = re.compile(r'[^A-Za-z0-9_.\-]')


def sanitize_name(raw: str) -> str:
    """
    Sanitize a plugin or type name.

    Every character outside ASCII letters, digits, '-', '_' and '.' is
    replaced with '_' and the result is truncated to MAX_NAME_LENGTH bytes.

    Args:
        raw (str): Name as supplied by the metric source

    Returns:
        str: Protocol-safe name, DEFAULT_NAME if nothing usable remains
    """
    if not raw:
        return DEFAULT_NAME
    cleaned = _ILLEGAL_CHARS.sub('_', str(raw))[:MAX_NAME_LENGTH]
    return cleaned or DEFAULT_NAME


def sanitize_instance_name(raw: str) -> str:
    """Sanitize a plugin or type instance name, dropping leading and trailing '/'."""
    if not raw:
        return DEFAULT_NAME
    return sanitize_name(str(raw).strip('/'))
