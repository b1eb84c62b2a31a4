"""HTTP transport and drug resolution clients."""

from ddiminer.api.http import SourceHTTPClient
from ddiminer.api.rxnorm import DrugResolver, ResolvedDrug, RxNormClient

__all__ = ["SourceHTTPClient", "DrugResolver", "ResolvedDrug", "RxNormClient"]
