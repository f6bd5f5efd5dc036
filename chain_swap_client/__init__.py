"""Chain Swap Client - cooperative MuSig2 chain swaps against a swap service."""

__version__ = "0.1.0"

from .musig import CooperativeSigner
from .quote import QuoteNegotiator
from .service_client import SwapServiceClient
from .session import SwapSession
from .transactions import ClaimTransactionBuilder

__all__ = [
    "ClaimTransactionBuilder",
    "CooperativeSigner",
    "QuoteNegotiator",
    "SwapServiceClient",
    "SwapSession",
]
