"""Implement high-level pg_keeper exceptions.

More specific exceptions can be found in other modules, as subclasses of any exception defined in this module.
"""
from typing import Any


class KeeperException(Exception):
    """Parent class for all kind of pg_keeper exceptions.

    :ivar value: description of the exception.
    """

    def __init__(self, value: Any) -> None:
        """Create a new instance of :class:`KeeperException` with the given description.

        :param value: description of the exception.
        """
        self.value = value

    def __str__(self) -> str:
        return str(self.value)


class KeeperFatalException(KeeperException):
    """Internal state that the supervisor can not reason about, the process must exit."""

    pass


class PostgresException(KeeperException):
    """Any exception related with the local Postgres instance."""

    pass


class PostgresConnectionException(PostgresException):
    """Any problem faced while connecting to a Postgres instance."""

    pass


class RegistryError(KeeperException):
    """The node registry could not be read or written."""

    pass


class ConfigParseError(KeeperException):
    """Any issue identified while loading or validating the pg_keeper configuration."""

    pass


class KeeperAssertionError(KeeperException):
    """Any issue related to type/value validation."""

    pass
