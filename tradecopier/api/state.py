from dataclasses import dataclass

from tradecopier.core.acks import AckHandler
from tradecopier.core.clients import ClientRegistry
from tradecopier.core.delivery import DeliveryHandler
from tradecopier.core.ingress import IngressHandler
from tradecopier.core.store import CopierStore
from tradecopier.infrastructure.config import AppConfig, SecretsConfig


@dataclass
class RelayState:
    """Everything the HTTP layer needs, built once per app."""
    config: AppConfig
    secrets: SecretsConfig
    store: CopierStore
    clients: ClientRegistry
    ingress: IngressHandler
    delivery: DeliveryHandler
    acks: AckHandler

    @classmethod
    def build(
        cls,
        config: AppConfig,
        secrets: SecretsConfig,
        store: CopierStore,
        clients: ClientRegistry,
    ) -> "RelayState":
        return cls(
            config=config,
            secrets=secrets,
            store=store,
            clients=clients,
            ingress=IngressHandler(store, accepted_types=config.ingress.accepted_types),
            delivery=DeliveryHandler(
                store,
                default_limit=config.delivery.default_limit,
                max_limit=config.delivery.max_limit,
            ),
            acks=AckHandler(store),
        )
