from app.modules.ledger.domain.providers.base import PollResult, ProviderAdapter
from app.modules.ledger.domain.providers.gusto import GustoAdapter
from app.modules.ledger.domain.providers.plaid import PlaidAdapter
from app.modules.ledger.domain.providers.quickbooks import QuickBooksAdapter
from app.modules.ledger.domain.providers.stripe import StripeAdapter
from app.shared.core.config import Settings
from app.shared.core.exceptions import InvalidRequestError

PROVIDER_ADAPTERS: dict[str, type[ProviderAdapter]] = {
    "plaid": PlaidAdapter,
    "stripe": StripeAdapter,
    "qbo": QuickBooksAdapter,
    "gusto": GustoAdapter,
}

SUPPORTED_PROVIDERS = tuple(PROVIDER_ADAPTERS)


def get_adapter(provider: str, settings: Settings | None = None) -> ProviderAdapter:
    adapter_cls = PROVIDER_ADAPTERS.get(provider)
    if adapter_cls is None:
        raise InvalidRequestError(
            f"Unsupported provider: {provider}",
            details={"supported": list(SUPPORTED_PROVIDERS)},
        )
    return adapter_cls(settings)


def build_adapters(settings: Settings | None = None) -> dict[str, ProviderAdapter]:
    return {name: adapter_cls(settings) for name, adapter_cls in PROVIDER_ADAPTERS.items()}


__all__ = [
    "GustoAdapter",
    "PlaidAdapter",
    "PollResult",
    "ProviderAdapter",
    "QuickBooksAdapter",
    "StripeAdapter",
    "PROVIDER_ADAPTERS",
    "SUPPORTED_PROVIDERS",
    "build_adapters",
    "get_adapter",
]
