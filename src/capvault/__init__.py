"""capvault - trust core for a dApp-facing wallet.

capvault provides:
- Canonical capability encoding and ed25519 signing (crypto)
- Password-protected credential vault with auto-lock (vault)
- Connection and capability registries over a shared store (registry)
- Request broker mediating dApp requests and user decisions (broker)
- Cross-context session synchronization (sync)
"""

__version__ = "0.1.0"

from . import (
    core as core,
)
from . import (
    errors as errors,
)
