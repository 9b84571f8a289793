"""Run state of the pg_keeper supervisor.

The run state lives only in memory. A restarted supervisor rebuilds it from ``pg_is_in_recovery()`` and a fresh read
of the node registry.
"""
from enum import Enum
from typing import List, Optional, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .registry import Node


class KeeperMode(str, Enum):
    """Role the local node plays in the cluster."""

    MASTER = 'master'
    STANDBY = 'standby'

    def __repr__(self) -> str:
        """Get an "official" string representation of a :class:`KeeperMode` member."""
        return self.value

    def __str__(self) -> str:
        """Get a string representation of a :class:`KeeperMode` member."""
        return self.__repr__()


class KeeperState(str, Enum):
    """Possible values of :attr:`RunState.state`.

    Numeric indexes are published through the coordination cell and should NEVER change once assigned.
    """

    MASTER_READY = ('master ready', 0)
    MASTER_CONNECTED = ('master connected', 1)
    MASTER_ASYNC = ('master async', 2)
    STANDBY_READY = ('standby ready', 3)
    STANDBY_CONNECTED = ('standby connected', 4)
    STANDBY_ALONE = ('standby alone', 5)

    def __new__(cls, value: str, index: int) -> 'KeeperState':
        obj = str.__new__(cls, value)
        obj._value_ = value
        setattr(obj, 'index', index)
        return obj

    def __repr__(self) -> str:
        """Get an "official" string representation of a :class:`KeeperState` member."""
        return self.value

    def __str__(self) -> str:
        """Get a string representation of a :class:`KeeperState` member."""
        return self.__repr__()

    @classmethod
    def from_index(cls, index: int) -> Optional['KeeperState']:
        """Find the state published under *index*.

        :param index: numeric index of a state.

        :returns: the matching :class:`KeeperState` or ``None`` if *index* is unknown.

        :Example:

            >>> KeeperState.from_index(5)
            standby alone

            >>> KeeperState.from_index(42) is None
            True
        """
        for state in cls:
            if getattr(state, 'index') == index:
                return state

    @property
    def mode(self) -> KeeperMode:
        """Mode this state belongs to."""
        return KeeperMode.MASTER if self.name.startswith('MASTER') else KeeperMode.STANDBY


class RunState(object):
    """Mutable state of the supervisor, owned by :class:`~pgkeeper.ha.Ha` and changed only by its run loop.

    :ivar mode: current role of the local node.
    :ivar state: current substate.
    :ivar retry_count: consecutive heartbeat failures against the tracked primary.
    :ivar own_pid: pid of the supervisor process.
    :ivar nodes: last successfully read content of the node registry, ``None`` until the first read.
    :ivar generation: last seen invalidation generation of the coordination cell.
    """

    def __init__(self, mode: KeeperMode, own_pid: int) -> None:
        self.mode = mode
        self.state = KeeperState.MASTER_READY if mode == KeeperMode.MASTER else KeeperState.STANDBY_READY
        self.retry_count = 0
        self.own_pid = own_pid
        self.nodes: Optional[List['Node']] = None
        self.generation = 0

    def __repr__(self) -> str:
        return '<RunState mode={0} state={1} retry_count={2}>'.format(self.mode, self.state, self.retry_count)
