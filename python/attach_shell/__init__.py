"""
attach_shell - attach an interactive Python shell to a running process.

The host calls :func:`listen` with a shell directory; clients read
``<shell_dir>/info.json`` to find the port and key. Each module keeps one
responsibility:

    discovery.py  → info.json publish/disable/read
    framing.py    → JSON handshake header split off the raw socket stream
    options.py    → handshake option negotiation
    evaluator.py  → shared evaluation context, default Python evaluator
    pipeline.py   → serialized evaluation across connections
    history.py    → persistent history and recall buffer
    session.py    → interactive session per connection
    server.py     → listener, handshake deadline, one-shot mode
    client.py     → discovery-driven client
"""

from .client import ClientConfig, ShellClient  # noqa: F401
from .discovery import DiscoveryError, DiscoveryInfo  # noqa: F401
from .evaluator import EvaluationContext, IncompleteInput, PythonEvaluator  # noqa: F401
from .framing import FrameReader, HandshakeError, PayloadStream  # noqa: F401
from .history import HistoryStore  # noqa: F401
from .pipeline import EvaluationPipeline, PipelineClosed  # noqa: F401
from .server import ShellConfig, ShellServer, disable, listen  # noqa: F401
from .session import ShellSession  # noqa: F401

__all__ = [
    "ClientConfig",
    "ShellClient",
    "DiscoveryError",
    "DiscoveryInfo",
    "EvaluationContext",
    "IncompleteInput",
    "PythonEvaluator",
    "FrameReader",
    "HandshakeError",
    "PayloadStream",
    "HistoryStore",
    "EvaluationPipeline",
    "PipelineClosed",
    "ShellConfig",
    "ShellServer",
    "ShellSession",
    "disable",
    "listen",
]

__version__ = "0.1.0-dev"
