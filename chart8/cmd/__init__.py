"""
Commands exposed by the chart8 entrypoint
"""

# Local
from .base import CmdBase
from .run_operator_cmd import RunOperatorCmd
