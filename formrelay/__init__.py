"""Relay Google Forms responses into Discord forum threads.

Public API re-exported here for convenience::

    from formrelay import RelayConfig, RelayService
"""

from .composer import MessageComposer
from .config import (
    ComposerConfig,
    DiscordConfig,
    FormsAPIConfig,
    LedgerConfig,
    RelayConfig,
    RetryConfig,
)
from .discord_sink import DiscordSink
from .errors import AuthorizationError, DeliveryError, RelayError, SourceAPIError
from .forms_client import GoogleFormsClient
from .interface import FormSource, MessageSink
from .ledger import DeliveryLedger, LedgerEntry, LedgerStore
from .logging import setup_logging
from .models import (
    DestinationMapping,
    FormSchema,
    MessagePayload,
    NormalizedRecord,
    PassSummary,
    RawRecord,
    Source,
)
from .normalizer import normalize
from .reconciler import Reconciler
from .service import RelayService

__all__ = [
    "AuthorizationError",
    "ComposerConfig",
    "DeliveryError",
    "DeliveryLedger",
    "DestinationMapping",
    "DiscordConfig",
    "DiscordSink",
    "FormSchema",
    "FormSource",
    "FormsAPIConfig",
    "GoogleFormsClient",
    "LedgerConfig",
    "LedgerEntry",
    "LedgerStore",
    "MessageComposer",
    "MessagePayload",
    "MessageSink",
    "NormalizedRecord",
    "PassSummary",
    "RawRecord",
    "Reconciler",
    "RelayConfig",
    "RelayError",
    "RelayService",
    "RetryConfig",
    "SourceAPIError",
    "Source",
    "normalize",
    "setup_logging",
]
