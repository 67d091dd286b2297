"""
Utilities for allowing dataclasses to be populated by user-provided
configuration (e.g. from a Yaml file).

.. note::
    On naming conventions: this module converts hyphens in key names to
    underscores as a matter of course. Error messages refer to keys in
    their hyphenated form, since that is what users write.
"""

import dataclasses

from .errors import ConfigurationError

__all__ = [
    'ConfigurableMixin',
    'check_config_keys',
    'enforce_required_keys',
    'process_seconds',
    'process_integer',
]


def _has_default(f: dataclasses.Field):
    return (
        f.default_factory is not dataclasses.MISSING
        or f.default is not dataclasses.MISSING
    )


def _user_key(key: str) -> str:
    return key.replace('_', '-')


@dataclasses.dataclass(frozen=True)
class ConfigurableMixin:
    """General configuration mixin for dataclasses"""

    @classmethod
    def process_entries(cls, config_dict):
        """
        Hook method that can modify the configuration dictionary
        to overwrite or tweak some of their values (e.g. to load certificates
        from the file names supplied, or to validate numeric settings).

        Subclasses that override this method should call
        ``super().process_entries()``, and leave keys that they do not
        recognise untouched.

        :param config_dict:
            A dictionary containing configuration values, with underscores
            in the key names.
        :raises ConfigurationError:
            when there is a problem processing a relevant entry.
        """
        pass

    @classmethod
    def from_config(cls, config_dict):
        """
        Attempt to instantiate an object of the class on which it is called,
        by means of the configuration settings passed in.

        The keys of the dictionary are checked against the data fields of
        the class, processed using :meth:`process_entries`, and passed to the
        initialiser as a kwargs dict.

        :param config_dict:
            A dictionary containing configuration values.
        :return:
            An instance of the class on which it is called.
        :raises ConfigurationError:
            when an unexpected configuration key is encountered or left
            unfilled, or when there is a problem processing one of the config
            values.
        """
        fields = dataclasses.fields(cls)
        check_config_keys(cls.__name__, {f.name for f in fields}, config_dict)
        config_dict = {
            key.replace('-', '_'): v for key, v in config_dict.items()
        }

        cls.process_entries(config_dict)

        enforce_required_keys(
            cls.__name__,
            {f.name for f in fields if not _has_default(f)},
            config_dict,
        )
        try:
            # noinspection PyArgumentList
            return cls(**config_dict)
        except TypeError as e:  # pragma: nocover
            raise ConfigurationError(str(e))


def check_config_keys(config_name, expected_keys, config_dict):
    # Required keys are checked after processing, in enforce_required_keys
    if not isinstance(config_dict, dict):
        raise ConfigurationError(
            f"{config_name} requires a dictionary to initialise."
        )
    unexpected_keys = _check_subset(config_dict.keys(), expected_keys)
    if unexpected_keys:
        raise ConfigurationError(
            f"Unexpected {'key' if len(unexpected_keys) == 1 else 'keys'} "
            f"in configuration for {config_name}: "
            f"{', '.join(sorted(unexpected_keys))}."
        )


def _check_subset(expected_sub, expected_sup):
    expected_sub = {_user_key(key) for key in expected_sub}
    expected_sup = {_user_key(key) for key in expected_sup}
    return expected_sub - expected_sup


def enforce_required_keys(config_name, required_keys, config_dict):
    missing_keys = _check_subset(required_keys, config_dict.keys())
    if missing_keys:
        raise ConfigurationError(
            f"Missing required {'key' if len(missing_keys) == 1 else 'keys'} "
            f"in configuration for {config_name}: "
            f"{', '.join(sorted(missing_keys))}."
        )


def process_seconds(config_dict, key):
    """
    Normalise a duration setting to a float number of seconds, in place.
    Absent and ``None`` values are left alone.

    :raises ConfigurationError:
        if the value is not a number.
    """
    value = config_dict.get(key, None)
    if value is None:
        return
    # bool is a subclass of int
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(
            f"'{_user_key(key)}' must be specified in seconds."
        )
    config_dict[key] = float(value)


def process_integer(config_dict, key):
    """
    Check that an integer setting is indeed an integer.
    Absent and ``None`` values are left alone.

    :raises ConfigurationError:
        if the value is not an integer.
    """
    value = config_dict.get(key, None)
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"'{_user_key(key)}' must be an integer.")
