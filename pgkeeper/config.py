"""Facilities related to pg_keeper configuration."""
import logging
import os
import re

from collections import defaultdict
from copy import deepcopy
from typing import Any, Callable, cast, Dict, List, Optional, TYPE_CHECKING

import yaml

from . import KEEPER_ENV_PREFIX
from .exceptions import ConfigParseError
from .utils import deep_compare, parse_bool, parse_int, patch_config

logger = logging.getLogger(__name__)


def default_validator(conf: Dict[str, Any]) -> List[str]:
    """Ensure *conf* is not empty.

    :raises:
        :class:`ConfigParseError`: if *conf* is empty.
    """
    if not conf:
        raise ConfigParseError("Config is empty.")
    return []


class Config(object):
    """Handle pg_keeper configuration.

    The effective configuration is built from :attr:`__DEFAULT_CONFIG` overridden by the local configuration, which
    comes from a YAML file (or a directory of them), or from the YAML document in :attr:`KEEPER_CONFIG_VARIABLE`, and
    is in both cases patched with ``PG_KEEPER_*`` environment variables.

    The object mimics a read-only :class:`dict`.

    :cvar KEEPER_CONFIG_VARIABLE: name of the environment variable that can hold the whole configuration.
    :cvar CELL_FILENAME: name of the coordination cell file under the data directory.
    """

    KEEPER_CONFIG_VARIABLE = KEEPER_ENV_PREFIX + 'CONFIGURATION'
    CELL_FILENAME = 'pg_keeper.cell'

    __DEFAULT_CONFIG: Dict[str, Any] = {
        'keepalives_time': 5,
        'keepalives_count': 1,
        'connect_timeout': 5,
        'postgresql': {
            'conninfo': '',
            'bin_dir': '',
            'pg_ctl_timeout': 60,
        },
        'log': {},
    }

    # parameter, minimal value
    __INT_PARAMETERS = (('keepalives_time', 1), ('keepalives_count', 1), ('connect_timeout', 0))

    def __init__(self, configfile: str,
                 validator: Optional[Callable[[Dict[str, Any]], List[str]]] = default_validator) -> None:
        """Load and validate the configuration.

        :param configfile: path to a YAML file or a directory with YAML files. Ignored if it doesn't exist.
        :param validator: function returning a list of problems found in the local configuration.

        :raises:
            :class:`ConfigParseError`: if *validator* reported any issue.
        """
        self.__environment_configuration = self._build_environment_configuration()

        self._config_file = configfile if configfile and os.path.exists(configfile) else None
        if self._config_file:
            self._local_configuration = self._load_config_file()
        else:
            config_env = os.environ.pop(self.KEEPER_CONFIG_VARIABLE, None)
            self._local_configuration = config_env and yaml.safe_load(config_env) or {}
            patch_config(self._local_configuration, self.__environment_configuration)

        if validator:
            errors = validator(self._local_configuration)
            if errors:
                raise ConfigParseError("\n".join(errors))

        self.__effective_configuration = self._build_effective_configuration(self._local_configuration)

    @property
    def config_file(self) -> Optional[str]:
        return self._config_file

    @property
    def local_configuration(self) -> Dict[str, Any]:
        return deepcopy(dict(self._local_configuration))

    @classmethod
    def get_default_config(cls) -> Dict[str, Any]:
        return deepcopy(cls.__DEFAULT_CONFIG)

    def _load_config_path(self, path: str) -> Dict[str, Any]:
        """Load configuration from a file, or from all ``*.yml``/``*.yaml`` files of a directory in sorted order.

        :raises:
            :class:`ConfigParseError`: if *path* is invalid or a file doesn't contain a mapping.
        """
        if os.path.isfile(path):
            files = [path]
        elif os.path.isdir(path):
            files = [os.path.join(path, f) for f in sorted(os.listdir(path))
                     if (f.endswith('.yml') or f.endswith('.yaml')) and os.path.isfile(os.path.join(path, f))]
        else:
            logger.error('config path %s is neither directory nor file', path)
            raise ConfigParseError('invalid config path')

        overall_config: Dict[str, Any] = {}
        for fname in files:
            with open(fname) as f:
                config = yaml.safe_load(f)
                if not isinstance(config, dict):
                    logger.error('%s does not contain a dict', fname)
                    raise ConfigParseError(f'invalid config file {fname}')
                patch_config(overall_config, cast(Dict[Any, Any], config))
        return overall_config

    def _load_config_file(self) -> Dict[str, Any]:
        if TYPE_CHECKING:  # pragma: no cover
            assert self.config_file is not None
        config = self._load_config_path(self.config_file)
        patch_config(config, self.__environment_configuration)
        return config

    def reload_local_configuration(self) -> Optional[bool]:
        """Re-read the configuration file(s).

        :returns: ``True`` if the local configuration has changed.
        """
        if self.config_file:
            try:
                configuration = self._load_config_file()
                if not deep_compare(self._local_configuration, configuration):
                    self.__effective_configuration = self._build_effective_configuration(configuration)
                    self._local_configuration = configuration
                    return True
                else:
                    logger.info('No local configuration items changed.')
            except Exception:
                logger.exception('Exception when reloading local configuration from %s', self.config_file)

    @staticmethod
    def _build_environment_configuration() -> Dict[str, Any]:
        """Collect settings given as ``PG_KEEPER_*`` environment variables.

        Every variable is removed from the environment once read, so that it is not inherited by ``pg_ctl`` or the
        after-promotion command.
        """
        ret: Dict[str, Any] = defaultdict(dict)

        def _popenv(name: str) -> Optional[str]:
            return os.environ.pop(KEEPER_ENV_PREFIX + name.upper(), None)

        for param in ('name', 'primary_conninfo', 'after_command', 'coordination_file'):
            value = _popenv(param)
            if value:
                ret[param] = value

        for param in ('keepalives_time', 'keepalives_count', 'connect_timeout'):
            value = _popenv(param)
            if value:
                value = parse_int(value, 's') if param == 'keepalives_time' else parse_int(value)
                if value is not None:
                    ret[param] = value

        def _set_section_values(section: str, params: List[str]) -> None:
            for param in params:
                value = _popenv(section + '_' + param)
                if value:
                    ret[section][param] = value

        _set_section_values('postgresql', ['data_dir', 'conninfo', 'bin_dir', 'pg_ctl_timeout'])
        _set_section_values('log', ['type', 'level', 'traceback_level', 'format', 'dateformat', 'static_fields',
                                    'max_queue_size', 'dir', 'mode', 'file_size', 'file_num', 'loggers',
                                    'deduplicate_heartbeat_logs'])

        value = ret.get('log', {}).pop('deduplicate_heartbeat_logs', None)
        if value:
            value = parse_bool(value)
            if value is not None:
                ret['log']['deduplicate_heartbeat_logs'] = value

        for first, params in (('postgresql', ('pg_ctl_timeout',)),
                              ('log', ('max_queue_size', 'file_size', 'file_num', 'mode'))):
            for second in params:
                value = ret.get(first, {}).pop(second, None)
                if value:
                    value = parse_int(value, 's') if second == 'pg_ctl_timeout' else parse_int(value)
                    if value is not None:
                        ret[first][second] = value

        def _parse_yaml(value: str, start: str, template: str) -> Any:
            if not value.strip().startswith(start):
                value = template.format(value)
            try:
                return yaml.safe_load(value)
            except Exception:
                logger.exception('Exception when parsing %s', value)
                return None

        logformat = ret.get('log', {}).get('format')
        if logformat and not re.search(r'%\(\w+\)', logformat):
            logformat = _parse_yaml(logformat, '[', '[{0}]')
            if logformat:
                ret['log']['format'] = logformat

        for second in ('static_fields', 'loggers'):
            value = ret.get('log', {}).pop(second, None)
            if value:
                value = _parse_yaml(value, '{', '{{{0}}}')
                if value:
                    ret['log'][second] = value

        return dict(ret)

    def _build_effective_configuration(self, local_configuration: Dict[str, Any]) -> Dict[str, Any]:
        """Merge *local_configuration* into the defaults and fill in the derived values."""
        config = self.get_default_config()
        for name, value in local_configuration.items():
            if name == 'postgresql':
                config['postgresql'].update(deepcopy(value or {}))
            else:
                config[name] = deepcopy(value) if value is not None else config.get(name)

        for param, min_value in self.__INT_PARAMETERS:
            value = parse_int(config.get(param), 's')
            if value is None:
                value = self.__DEFAULT_CONFIG[param]
            if value < min_value:
                logger.warning("%s=%d can't be smaller than %d, adjusting...", param, value, min_value)
                value = min_value
            config[param] = value

        pg_config = config['postgresql']
        pg_ctl_timeout = parse_int(pg_config.get('pg_ctl_timeout'), 's')
        pg_config['pg_ctl_timeout'] = pg_ctl_timeout if pg_ctl_timeout and pg_ctl_timeout > 0 else 60
        pg_config['connect_timeout'] = config['connect_timeout']

        if not config.get('coordination_file') and pg_config.get('data_dir'):
            config['coordination_file'] = os.path.join(pg_config['data_dir'], self.CELL_FILENAME)

        return config

    def get(self, key: str, default: Optional[Any] = None) -> Any:
        return self.__effective_configuration.get(key, default)

    def __contains__(self, key: str) -> bool:
        return key in self.__effective_configuration

    def __getitem__(self, key: str) -> Any:
        return self.__effective_configuration[key]

    def copy(self) -> Dict[str, Any]:
        return deepcopy(self.__effective_configuration)
