import logging
import sys
from contextlib import contextmanager

import click

from ..config.errors import ConfigurationError
from ..config.logging import LogConfig, StdLogOutput
from ..errors import (
    MalformedInput,
    RemoteSignerError,
    SigningError,
    ValueErrorWithMessage,
    VerificationSetupError,
)
from .utils import logger


class NoStackTraceFormatter(logging.Formatter):
    def formatException(self, ei) -> str:
        return ""  # pragma: nocover


LOG_FORMAT_STRING = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def logging_setup(log_configs, verbose: bool):
    log_config: LogConfig
    for module, log_config in log_configs.items():
        cur_logger = logging.getLogger(module)
        cur_logger.setLevel(log_config.level)
        handler: logging.StreamHandler
        if isinstance(log_config.output, StdLogOutput):
            if log_config.output == StdLogOutput.STDOUT:
                handler = logging.StreamHandler(sys.stdout)
            else:
                handler = logging.StreamHandler()
            # when logging to the console, don't output stack traces
            # unless in verbose mode
            if verbose:
                formatter = logging.Formatter(LOG_FORMAT_STRING)
            else:
                formatter = NoStackTraceFormatter(LOG_FORMAT_STRING)
        else:
            handler = logging.FileHandler(log_config.output)
            formatter = logging.Formatter(LOG_FORMAT_STRING)
        handler.setFormatter(formatter)
        cur_logger.addHandler(handler)


@contextmanager
def pkisigner_exception_manager():
    msg = exception = None
    try:
        yield
    except click.ClickException:
        raise
    except ConfigurationError as e:
        exception = e
        msg = f"Configuration problem: {e.msg}"
    except RemoteSignerError as e:
        exception = e
        msg = f"Remote signer error: {e.msg}"
    except SigningError as e:
        exception = e
        msg = f"Error raised while producing signed file: {e.msg}"
    except VerificationSetupError as e:
        exception = e
        msg = f"Could not read signed file: {e.failure_message}"
    except MalformedInput as e:
        exception = e
        msg = f"Malformed input: {e.failure_message}"
    except ValueErrorWithMessage as e:
        exception = e
        msg = f"Processing error: {e.failure_message}"
    except Exception as e:
        exception = e
        msg = "Generic processing error."

    if exception is not None:
        logger.error(msg, exc_info=exception)
        raise click.ClickException(msg)


DEFAULT_CONFIG_FILE = 'pkisigner.yml'
