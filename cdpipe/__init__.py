"""cdpipe: self-mutating continuous-deployment pipeline orchestrator.

A pipeline is an ordered list of stages; each stage holds actions grouped
into tiers by run order.  One execution runs one source revision through
Source -> Build -> Self_Mutation -> Deploy:

  - artifacts flow between actions through a content-addressed store
  - every transition lands in a hash-chained SQLite ledger
  - the self-mutation stage redeploys the pipeline's own definition and
    restarts the execution when it changed
  - only one execution runs at a time; newer revisions wait (latest wins)
"""

__version__ = "0.2.0"
__description__ = "Self-mutating continuous-deployment pipeline orchestrator"

from cdpipe.core.orchestrator import Orchestrator
from cdpipe.monitor.projection import MonitorProjection
from cdpipe.cli.app import app as cli

__all__ = ["Orchestrator", "MonitorProjection", "cli", "__version__"]
