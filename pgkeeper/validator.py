#!/usr/bin/env python3
"""pg_keeper configuration validation helpers.

:var schema: configuration schema of the daemon launched by ``pg_keeper`` command.
"""
import os
import shutil

from typing import Any, cast, Dict, Iterator, List, Optional as OptionalType, Tuple, TYPE_CHECKING, Union

from .exceptions import ConfigParseError, KeeperAssertionError
from .log import type_logformat
from .utils import parse_int


def validate_log_field(field: Any) -> bool:
    """Checks if log field is valid.

    :returns: ``True`` if the field is either a string or a dictionary with exactly one key
              that has string value, ``False`` otherwise.
    """
    if isinstance(field, str):
        return True
    elif isinstance(field, dict):
        field = cast(Dict[str, Any], field)
        return len(field) == 1 and isinstance(next(iter(field.values())), str)
    return False


def validate_log_format(logformat: type_logformat) -> bool:
    """Checks if log format is valid.

    :raises:
        :exc:`~pgkeeper.exceptions.ConfigParseError`: if the format is neither a string nor a non-empty list of
            valid log fields.
    """
    if isinstance(logformat, str):
        return True
    elif isinstance(logformat, list):
        logformat = cast(List[Any], logformat)
        if len(logformat) == 0:
            raise ConfigParseError('should contain at least one item')
        if not all(map(validate_log_field, logformat)):
            raise ConfigParseError('each item should be a string or a dictionary with string values')

        return True
    else:
        raise ConfigParseError('Should be a string or a list')


def validate_data_dir(data_dir: str) -> bool:
    """Validate the value of ``postgresql.data_dir``.

    pg_keeper supervises an existing node, so the directory must exist and look like a PostgreSQL data directory.

    :raises:
        :class:`~pgkeeper.exceptions.ConfigParseError`: if *data_dir* is empty, missing, not a directory or lacks
            ``PG_VERSION``.
    """
    if not data_dir:
        raise ConfigParseError("is an empty string")
    elif not os.path.exists(data_dir):
        raise ConfigParseError("does not exist")
    elif not os.path.isdir(data_dir):
        raise ConfigParseError("is not a directory")
    elif not os.path.exists(os.path.join(data_dir, "PG_VERSION")):
        raise ConfigParseError("doesn't look like a valid data directory")
    return True


class Result(object):
    """Represent the result of a given validation that was performed.

    :ivar status: If the validation succeeded.
    :ivar path: YAML tree path of the configuration option.
    :ivar data: value of the configuration option.
    :ivar level: error level, in case of error.
    :ivar error: error message if the validation failed, otherwise ``None``.
    """

    def __init__(self, status: bool, error: OptionalType[str] = "didn't pass validation", level: int = 0,
                 path: str = "", data: Any = "") -> None:
        self.status = status
        self.path = path
        self.data = data
        self.level = level
        self._error = error
        self.error = None if status else error

    def __repr__(self) -> str:
        """Show configuration path and value. If the validation failed, also show the error message."""
        return str(self.path) + (" " + str(self.data) + " " + str(self._error) if self.error else "")


class Or(object):
    """Alternative validators for a single configuration value, the value is valid if any of them accepts it."""

    def __init__(self, *args: Any) -> None:
        self.args = args


class Optional(object):
    """Mark a configuration option as optional.

    :ivar name: name of the configuration option.
    :ivar default: value to set if the configuration option is not explicitly provided
    """

    def __init__(self, name: str, default: OptionalType[Any] = None) -> None:
        self.name = name
        self.default = default


class BinDirectory(object):
    """Check that the PostgreSQL binary directory (or ``PATH`` when not given) provides ``pg_ctl``.

    :cvar BINARIES: executables pg_keeper runs.
    """

    BINARIES = ["pg_ctl"]

    def validate(self, name: str) -> Iterator[Result]:
        if name and not os.path.exists(name):
            yield Result(False, "Directory '{}' does not exist.".format(name))
        elif name and not os.path.isdir(name):
            yield Result(False, "'{}' is not a directory.".format(name))
        else:
            for program in self.BINARIES:
                if not shutil.which(program, path=name or None):
                    yield Result(False, f"does not contain '{program}' in '{(name or '$PATH')}'")


class Schema(object):
    """Define a configuration schema.

    The validator of a schema is one of:

        * :class:`str`: a string value is required;
        * :class:`type`: a value of the given type is required;
        * ``callable``: the callable must not raise for the value. If the callable has an ``expected_type``
          attribute the value must be of that type first;
        * :class:`list`: a non-empty list, each item is validated by the first element of the validator;
        * :class:`dict`: a mapping, keys are option names (:class:`str` or :class:`Optional`) and values are
          validators for the corresponding options;
        * :class:`Or`: any of the given validators must accept the value;
        * :class:`BinDirectory`.

    :Example:

        .. code-block:: python

            Schema({
                "name": str,
                Optional("keepalives_count"): IntValidator(min=1, expected_type=int),
                "postgresql": {
                    "data_dir": validate_data_dir,
                },
            })
    """

    def __init__(self, validator: Union[Dict[Any, Any], List[Any], Any]) -> None:
        self.validator = validator

    def __call__(self, data: Any) -> List[str]:
        """Validate *data* and return the list of errors found, if any."""
        errors: List[str] = []
        for i in self.validate(data):
            if not i.status:
                errors.append(str(i))
        return errors

    def validate(self, data: Any) -> Iterator[Result]:
        """Walk the schema and *data* together.

        :yields: one :class:`Result` per checked leaf.
        """
        self.data = data

        if isinstance(self.validator, str):
            yield Result(isinstance(self.data, str), "is not a string", level=1, data=self.data)
        elif isinstance(self.validator, type):
            yield Result(isinstance(self.data, self.validator),
                         "is not {}".format(_get_type_name(self.validator)), level=1, data=self.data)
        elif callable(self.validator):
            if hasattr(self.validator, "expected_type"):
                expected_type = getattr(self.validator, 'expected_type')
                if not isinstance(data, expected_type):
                    yield Result(False, "is not {}".format(_get_type_name(expected_type)), level=1, data=self.data)
                    return
            try:
                self.validator(data)
                yield Result(True, data=self.data)
            except Exception as e:
                yield Result(False, "didn't pass validation: {}".format(e), data=self.data)
        elif isinstance(self.validator, dict):
            if not isinstance(self.data, dict):
                yield Result(isinstance(self.data, dict), "is not a dictionary", level=1, data=self.data)
            else:
                yield from self.iter_dict()
        elif isinstance(self.validator, list):
            if not isinstance(self.data, list):
                yield Result(isinstance(self.data, list), "is not a list", level=1, data=self.data)
            else:
                yield from self.iter_list()
        elif isinstance(self.validator, Or):
            yield from self.iter_or()
        elif isinstance(self.validator, BinDirectory) and isinstance(self.data, str):
            yield from self.validator.validate(self.data)

    def iter_list(self) -> Iterator[Result]:
        data = cast(List[Any], self.data)
        if len(data) == 0:
            yield Result(False, "is an empty list", data=data)

        validators = cast(List[Any], self.validator)
        if len(validators):
            for key, value in enumerate(data):
                for v in Schema(validators[0]).validate(value):
                    yield Result(v.status, v.error,
                                 path=(str(key) + ("." + v.path if v.path else "")), level=v.level, data=value)

    def iter_dict(self) -> Iterator[Result]:
        data = cast(Dict[Any, Any], self.data)
        validators = cast(Dict[Any, Any], self.validator)
        for key, validator in validators.items():
            d = key.name if isinstance(key, Optional) else key
            if d not in data:
                if not isinstance(key, Optional):
                    yield Result(False, "is not defined.", path=d)
                    continue
                if key.default is None:
                    continue
                data[d] = key.default
            for v in Schema(validator).validate(data[d]):
                yield Result(v.status, v.error,
                             path=(d + ("." + v.path if v.path else "")), level=v.level, data=v.data)

    def iter_or(self) -> Iterator[Result]:
        """Report the least severe errors if none of the alternatives accepted the value."""
        if TYPE_CHECKING:  # pragma: no cover
            assert isinstance(self.validator, Or)
        results: List[Result] = []
        for a in self.validator.args:
            r = list(Schema(a).validate(self.data))
            if any([x.status for x in r]) and not all([x.status for x in r]):
                results += [x for x in r if not x.status]
            else:
                results += r
        if not any([x.status for x in results]):
            max_level = 3
            for v in sorted(results, key=lambda x: x.level):
                if v.level > max_level:
                    break
                max_level = v.level
                yield Result(v.status, v.error, path=v.path, level=v.level, data=v.data)


def _get_type_name(python_type: Any) -> str:
    types: Dict[Any, str] = {str: 'a string', int: 'an integer', float: 'a number',
                             bool: 'a boolean', list: 'an array', dict: 'a dictionary'}
    return types.get(python_type, getattr(python_type, '__name__', "unknown type"))


def assert_(condition: bool, message: str = "Wrong value") -> None:
    if not condition:
        raise KeeperAssertionError(message)


class IntValidator(object):
    """Validate an integer setting.

    :ivar min: minimum allowed value for the setting, if any.
    :ivar max: maximum allowed value for the setting, if any.
    :ivar base_unit: the base unit to convert the value to before checking if it's within *min* and *max* range.
    :ivar expected_type: the expected Python type.
    :ivar raise_assert: if an ``assert`` test should be performed regarding expected type and valid range.
    """

    def __init__(self, min: OptionalType[int] = None, max: OptionalType[int] = None,
                 base_unit: OptionalType[str] = None, expected_type: Any = None, raise_assert: bool = False) -> None:
        self.min = min
        self.max = max
        self.base_unit = base_unit
        if expected_type:
            self.expected_type = expected_type
        self.raise_assert = raise_assert

    def __call__(self, value: Any) -> bool:
        value = parse_int(value, self.base_unit)
        ret = isinstance(value, int)\
            and (self.min is None or value >= self.min)\
            and (self.max is None or value <= self.max)

        if self.raise_assert:
            assert_(ret)
        return ret


class EnumValidator(object):
    """Validate enum setting.

    :ivar allowed_values: allowed enum values, lower-cased unless the comparison is case sensitive.
    :ivar raise_assert: if an ``assert`` call should be performed regarding expected values.
    """

    def __init__(self, allowed_values: Tuple[str, ...],
                 case_sensitive: bool = False, raise_assert: bool = False) -> None:
        self.case_sensitive = case_sensitive
        self.allowed_values = set(v if case_sensitive else v.lower() for v in allowed_values)
        self.raise_assert = raise_assert

    def __call__(self, value: Any) -> bool:
        ret = isinstance(value, str) and (value if self.case_sensitive else value.lower()) in self.allowed_values

        if self.raise_assert:
            assert_(ret)
        return ret


schema = Schema({
    "name": str,
    Optional("keepalives_time"): IntValidator(min=1, base_unit='s', raise_assert=True),
    Optional("keepalives_count"): IntValidator(min=1, expected_type=int, raise_assert=True),
    Optional("connect_timeout"): IntValidator(min=0, base_unit='s', raise_assert=True),
    Optional("primary_conninfo"): str,
    Optional("after_command"): str,
    Optional("coordination_file"): str,
    Optional("log"): {
        Optional("type"): EnumValidator(('plain', 'json'), case_sensitive=True, raise_assert=True),
        Optional("level"): EnumValidator(('DEBUG', 'INFO', 'WARN', 'WARNING', 'ERROR', 'FATAL', 'CRITICAL'),
                                         case_sensitive=True, raise_assert=True),
        Optional("traceback_level"): EnumValidator(('DEBUG', 'ERROR'), raise_assert=True),
        Optional("format"): validate_log_format,
        Optional("dateformat"): str,
        Optional("static_fields"): dict,
        Optional("max_queue_size"): int,
        Optional("dir"): str,
        Optional("file_num"): int,
        Optional("file_size"): int,
        Optional("mode"): IntValidator(min=0, max=511, expected_type=int, raise_assert=True),
        Optional("loggers"): dict,
        Optional("deduplicate_heartbeat_logs"): bool
    },
    "postgresql": {
        "data_dir": validate_data_dir,
        Optional("conninfo"): str,
        Optional("bin_dir", ""): BinDirectory(),
        Optional("pg_ctl_timeout"): IntValidator(min=1, base_unit='s', raise_assert=True),
    },
})
