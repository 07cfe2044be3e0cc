"""lbnet CLI commands."""

from lbnet.commands.prewarm import prewarm
from lbnet.commands.reconstruct import reconstruct
from lbnet.commands.run import run
from lbnet.commands.status import status

__all__ = [
    "prewarm",
    "reconstruct",
    "run",
    "status",
]
