from pkisigner.cli._root import cli_root
from pkisigner.cli.commands.remote import *
from pkisigner.cli.commands.signing import *
from pkisigner.cli.commands.validation import *

__all__ = ['launch', 'cli_root']


def launch():
    cli_root(prog_name='pkisigner')
