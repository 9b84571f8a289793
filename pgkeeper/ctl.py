"""Implement ``pgkeeperctl``: a command-line application to manage the node registry of a pg_keeper cluster.

Every command connects to the local PostgreSQL node described in the ``postgresql`` section of the pg_keeper
configuration. Registry mutations invalidate the coordination cell and wake up the supervisor running on the same
node, so that it picks up the change right away.

:var CONFIG_DIR_PATH: path to pg_keeper configuration directory as per :func:`click.get_app_dir` output.
:var CONFIG_FILE_PATH: default path to ``pgkeeperctl.yaml`` configuration file.
"""

import json
import logging
import os

from typing import Any, Dict, List, Optional

import click
import yaml

from prettytable import PrettyTable

from .config import Config
from .coordination import CoordinationCell
from .exceptions import RegistryError
from .heartbeat import Heartbeat
from .postgresql import Postgresql
from .registry import NodeRegistry

CONFIG_DIR_PATH = click.get_app_dir('pg_keeper')
CONFIG_FILE_PATH = os.path.join(CONFIG_DIR_PATH, 'pgkeeperctl.yaml')


class KeeperCtlException(click.ClickException):
    """Raised upon issues faced by ``pgkeeperctl`` utility."""

    pass


def load_config(path: str) -> Dict[str, Any]:
    """Load configuration file from *path*.

    :raises:
        :class:`KeeperCtlException`: if a non-default *path* does not exist or is not readable.
    """
    if not (os.path.exists(path) and os.access(path, os.R_OK)):
        if path != CONFIG_FILE_PATH:
            raise KeeperCtlException('Provided config file {0} not existing or no read rights.'
                                     ' Check the -c/--config-file parameter'.format(path))
        else:
            logging.debug('Ignoring configuration file "%s". It does not exists or is not readable.', path)
    else:
        logging.debug('Loading configuration from file %s', path)
    return Config(path, validator=None).copy()


def _get_configuration() -> Dict[str, Any]:
    return click.get_current_context().obj['__config']


def get_cell() -> Optional[CoordinationCell]:
    path = _get_configuration().get('coordination_file')
    return CoordinationCell(path) if path else None


def get_registry() -> NodeRegistry:
    """Build a :class:`~pgkeeper.registry.NodeRegistry` bound to the local node and the coordination cell."""
    obj = click.get_current_context().obj
    if '__registry' not in obj:
        config = _get_configuration()
        obj['__registry'] = NodeRegistry(Postgresql(config.get('postgresql', {})),
                                         Heartbeat(config.get('connect_timeout')), get_cell())
    return obj['__registry']


def print_output(columns: List[str], rows: List[List[Any]], fmt: str = 'pretty', delimiter: str = '\t') -> None:
    """Print tabular information.

    :param columns: list of column names.
    :param rows: list of rows. Each item is a list of values for the columns.
    :param fmt: the printing format, one among ``pretty``, ``tsv``, ``json``, ``yaml`` or ``yml``.
    :param delimiter: the character to be used as delimiter when *fmt* is ``tsv``.
    """
    if fmt in {'json', 'yaml', 'yml'}:
        elements = [dict(zip(columns, r)) for r in rows]
        if fmt == 'json':
            click.echo(json.dumps(elements))
        else:
            click.echo(yaml.safe_dump(elements, default_flow_style=False, allow_unicode=True, sort_keys=False), nl=False)
    elif fmt == 'tsv':
        for r in [columns] + rows:
            click.echo(delimiter.join(map(str, r)))
    else:
        table = PrettyTable(columns)
        table.align = 'l'
        for r in rows:
            table.add_row(r)
        click.echo(table)


option_format = click.option('--format', '-f', 'fmt', help='Output format', default='pretty',
                             type=click.Choice(['pretty', 'tsv', 'json', 'yaml', 'yml']))


@click.group(cls=click.Group)
@click.option('--config-file', '-c', help='Configuration file',
              envvar='PGKEEPERCTL_CONFIG_FILE', default=CONFIG_FILE_PATH)
@click.pass_context
def ctl(ctx: click.Context, config_file: str) -> None:
    """Command-line interface for the pg_keeper node registry.
    \f
    Entry point of ``pgkeeperctl`` utility.

    The log level, by default ``WARNING``, can be overridden with ``LOGLEVEL``, ``PG_KEEPER_LOGLEVEL`` or
    ``PG_KEEPER_LOG_LEVEL`` environment variables.

    :param ctx: click context to be passed to sub-commands.
    :param config_file: path to the configuration file.
    """
    level = 'WARNING'
    for name in ('LOGLEVEL', 'PG_KEEPER_LOGLEVEL', 'PG_KEEPER_LOG_LEVEL'):
        level = os.environ.get(name, level)
    logging.basicConfig(format='%(asctime)s - %(levelname)s - %(message)s', level=level)
    ctx.obj = {'__config': load_config(config_file)}


@ctl.command('add', help='Register a node, the first one becomes the master')
@click.argument('name')
@click.argument('conninfo')
def add(name: str, conninfo: str) -> None:
    node = get_registry().add_node(name, conninfo)
    if node is None:
        raise KeeperCtlException('Failed to add node "{0}"'.format(name))
    click.echo('Added node "{0}" as {1} with seqno {2}'.format(node.name, node.role, node.seqno))


@ctl.command('remove', help='Remove a node by name')
@click.argument('name')
def remove(name: str) -> None:
    if not get_registry().delete_node(name):
        raise KeeperCtlException('Failed to remove node "{0}"'.format(name))
    click.echo('Removed node "{0}"'.format(name))


@ctl.command('remove-seqno', help='Remove a node by its sequence number')
@click.argument('seqno', type=int)
def remove_seqno(seqno: int) -> None:
    if not get_registry().delete_node_by_seqno(seqno):
        raise KeeperCtlException('Failed to remove node with seqno {0}'.format(seqno))
    click.echo('Removed node with seqno {0}'.format(seqno))


@ctl.command('check', help='Check whether a node accepts connections')
@click.argument('conninfo')
def check(conninfo: str) -> None:
    if not get_registry().verify_reachable(conninfo):
        raise KeeperCtlException('Node is not reachable')
    click.echo('Node is reachable')


@ctl.command('signal', help='Send a signal (reload, refresh or stop) to the running pg_keeper')
@click.argument('name')
def send_signal(name: str) -> None:
    cell = get_cell()
    if cell is None:
        raise KeeperCtlException('coordination_file is not configured')
    if not cell.send_signal(name):
        raise KeeperCtlException('Failed to send {0}'.format(name))


@ctl.command('list', help='List registered nodes')
@option_format
def list_nodes(fmt: str) -> None:
    try:
        nodes = get_registry().list_nodes()
    except RegistryError as e:
        raise KeeperCtlException(str(e))

    columns = ['Seqno', 'Name', 'Conninfo', 'Role']
    rows = [[n.seqno, n.name, n.to_dict()['conninfo'], n.role] for n in nodes]
    print_output(columns, rows, fmt)


@ctl.command('status', help='Show state of the pg_keeper running on this node')
@option_format
def status(fmt: str) -> None:
    cell = get_cell()
    if cell is None:
        raise KeeperCtlException('coordination_file is not configured')
    try:
        pid, generation, _, _ = cell.read()
        state = cell.status
    except OSError as e:
        raise KeeperCtlException('Failed to read {0}: {1}'.format(cell.path, e))
    print_output(['Pid', 'Generation', 'State'], [[pid, generation, str(state) if state else 'unknown']], fmt)


@ctl.command('reconcile', help='Align is_sync flags with synchronous_standby_names')
@click.option('--dry-run', is_flag=True, help='Only show what would change')
def reconcile(dry_run: bool) -> None:
    try:
        changes = get_registry().reconcile(dry_run)
    except RegistryError as e:
        raise KeeperCtlException(str(e))

    if not changes:
        return click.echo('No changes')
    for change in changes:
        click.echo('{0} node "{1}" (seqno {2}) as {3}'.format('Would mark' if dry_run else 'Marked', change.name,
                                                             change.seqno, 'sync' if change.is_sync else 'async'))
