import logging
import re

from typing import Any, List, NamedTuple

logger = logging.getLogger(__name__)

SYNC_REP_PARSER_RE = re.compile(r"""
           (?P<first> [fF][iI][rR][sS][tT] )
         | (?P<any> [aA][nN][yY] )
         | (?P<space> \s+ )
         | (?P<ident> [A-Za-z_][A-Za-z_0-9\$]* )
         | (?P<dquot> " (?: [^"]+ | "" )* " )
         | (?P<star> [*] )
         | (?P<num> \d+ )
         | (?P<comma> , )
         | (?P<parenstart> \( )
         | (?P<parenend> \) )
         | (?P<JUNK> . )
        """, re.X)


class SyncStandbyNames(NamedTuple):
    """class representing "synchronous_standby_names" value after parsing.

    :ivar sync_type: possible values: 'off', 'priority', 'quorum'
    :ivar num: how many nodes are required to be synchronous
    :ivar has_star: is set to `True` if "synchronous_standby_names" contains '*'
    :ivar members: standby names in the order they are listed in "synchronous_standby_names"
    """
    sync_type: str
    num: int
    has_star: bool
    members: List[str]

    def __contains__(self, name: object) -> bool:
        return self.has_star or name in self.members


class SyncChange(NamedTuple):
    """Correction of the ``is_sync`` flag of a single registry row.

    :ivar seqno: primary key of the row.
    :ivar name: node name.
    :ivar is_sync: new value of the flag.
    """
    seqno: int
    name: str
    is_sync: bool


def parse_sync_standby_names(value: str) -> SyncStandbyNames:
    """Parse postgresql synchronous_standby_names to constituent parts.

    :param value: the value of `synchronous_standby_names`
    :returns: :class:`SyncStandbyNames` object
    :raises `ValueError`: if the configuration value can not be parsed

    >>> parse_sync_standby_names('').sync_type
    'off'

    >>> parse_sync_standby_names('FiRsT').sync_type
    'priority'

    >>> parse_sync_standby_names('FiRsT').members
    ['FiRsT']

    >>> parse_sync_standby_names('"1"').members
    ['1']

    >>> parse_sync_standby_names(' b , a ').members
    ['b', 'a']

    >>> parse_sync_standby_names(' a , b ').num
    1

    >>> 'c' in parse_sync_standby_names('ANY 4("a",*,b)')
    True

    >>> parse_sync_standby_names('ANY 4("a",*,b)').num
    4

    >>> parse_sync_standby_names('FIRST 2 (s1, "S 2")')
    SyncStandbyNames(sync_type='priority', num=2, has_star=False, members=['s1', 'S 2'])

    >>> parse_sync_standby_names('1')  # doctest: +IGNORE_EXCEPTION_DETAIL
    Traceback (most recent call last):
        ...
    ValueError: Unparsable synchronous_standby_names value

    >>> parse_sync_standby_names('a,')  # doctest: +IGNORE_EXCEPTION_DETAIL
    Traceback (most recent call last):
        ...
    ValueError: Unparsable synchronous_standby_names value

    >>> parse_sync_standby_names('ANY 4("a" b,"c c")')  # doctest: +IGNORE_EXCEPTION_DETAIL
    Traceback (most recent call last):
        ...
    ValueError: Unparsable synchronous_standby_names value
    """
    tokens = [(m.lastgroup, m.group(0), m.start())
              for m in SYNC_REP_PARSER_RE.finditer(value)
              if m.lastgroup != 'space']
    if not tokens:
        return SyncStandbyNames('off', 0, False, [])

    if [t[0] for t in tokens[0:3]] == ['any', 'num', 'parenstart'] and tokens[-1][0] == 'parenend':
        sync_type = 'quorum'
        num = int(tokens[1][1])
        synclist = tokens[3:-1]
    elif [t[0] for t in tokens[0:3]] == ['first', 'num', 'parenstart'] and tokens[-1][0] == 'parenend':
        sync_type = 'priority'
        num = int(tokens[1][1])
        synclist = tokens[3:-1]
    elif [t[0] for t in tokens[0:2]] == ['num', 'parenstart'] and tokens[-1][0] == 'parenend':
        sync_type = 'priority'
        num = int(tokens[0][1])
        synclist = tokens[2:-1]
    else:
        sync_type = 'priority'
        num = 1
        synclist = tokens

    has_star = False
    members: List[str] = []
    for i, (a_type, a_value, a_pos) in enumerate(synclist):
        if i % 2 == 1:  # odd elements are supposed to be commas
            if len(synclist) == i + 1:  # except the last token
                raise ValueError("Unparsable synchronous_standby_names value %r: Unexpected token %s %r at %d" %
                                 (value, a_type, a_value, a_pos))
            if a_type != 'comma':
                raise ValueError("Unparsable synchronous_standby_names value %r: Got token %s %r while"
                                 " expecting comma at %d" % (value, a_type, a_value, a_pos))
        elif a_type in {'ident', 'first', 'any'}:
            members.append(a_value)
        elif a_type == 'star':
            members.append(a_value)
            has_star = True
        elif a_type == 'dquot':
            members.append(a_value[1:-1].replace('""', '"'))
        else:
            raise ValueError("Unparsable synchronous_standby_names value %r: Unexpected token %s %r at %d" %
                             (value, a_type, a_value, a_pos))
    return SyncStandbyNames(sync_type, num, has_star, members)


class SyncReconciler(object):
    """Bring the ``is_sync`` flags of the node registry in line with ``synchronous_standby_names``.

    Every method works on a cursor handed in by the caller, so the reconciliation becomes part of whatever
    transaction the caller has open.
    """

    NODES_SQL = 'SELECT seqno, name, conninfo, is_master, is_sync FROM pgkeeper.node_info ORDER BY seqno'
    UPDATE_SQL = 'UPDATE pgkeeper.node_info SET is_sync = %s WHERE seqno = %s'

    @staticmethod
    def membership(cursor: Any) -> SyncStandbyNames:
        """Read and parse the live value of ``synchronous_standby_names``.

        .. note::
            An unparsable value is logged and treated as empty membership.
        """
        cursor.execute('SHOW synchronous_standby_names')
        row = cursor.fetchone()
        value = row[0] if row else ''
        try:
            return parse_sync_standby_names(value or '')
        except ValueError as e:
            logger.warning('%s, treating synchronous membership as empty', e)
            return SyncStandbyNames('off', 0, False, [])

    def reconcile(self, cursor: Any, dry_run: bool = False) -> List[SyncChange]:
        """Correct ``is_sync`` of every row that disagrees with the synchronous membership.

        Master rows are always brought to ``is_sync = false``. ``is_master`` is never touched and no rows are
        added or removed, so a second call without intervening changes results in no writes.

        :param cursor: cursor of an open transaction.
        :param dry_run: compute and log the changes without writing them.

        :returns: the list of corrections, empty if the registry already agrees.
        """
        membership = self.membership(cursor)
        cursor.execute(self.NODES_SQL)
        changes: List[SyncChange] = []
        for seqno, name, _, is_master, is_sync in cursor.fetchall():
            desired = not is_master and name in membership
            if bool(is_sync) != desired:
                changes.append(SyncChange(seqno, name, desired))

        for change in changes:
            logger.info('%s node "%s" (seqno %s) as %s', 'Would mark' if dry_run else 'Marking',
                        change.name, change.seqno, 'synchronous' if change.is_sync else 'asynchronous')
            if not dry_run:
                cursor.execute(self.UPDATE_SQL, (change.is_sync, change.seqno))
        return changes
