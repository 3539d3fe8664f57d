"""Service wiring for the API. Override ``get_services`` in tests."""

from dataclasses import dataclass
from functools import lru_cache

from relay.agents.intake.graph import IntakePipeline
from relay.services.classification import EngagementClassifier
from relay.services.email.intake import InboundEmailService
from relay.services.materializer import EntityMaterializer
from relay.services.notifications.sms import TwilioSMSClient
from relay.services.reviews import ReviewService
from relay.services.routing import ConfidenceRouter
from relay.services.store import RelayStore


@dataclass
class Services:
    store: object
    pipeline: IntakePipeline
    inbound: InboundEmailService
    reviews: ReviewService


def build_services(store=None, llm=None, sms=None) -> Services:
    store = store or RelayStore.from_settings()
    sms = sms or TwilioSMSClient()
    materializer = EntityMaterializer(store)
    router = ConfidenceRouter(store, materializer, sms)
    pipeline = IntakePipeline(store, EngagementClassifier(store, llm=llm), router)
    return Services(
        store=store,
        pipeline=pipeline,
        inbound=InboundEmailService(pipeline),
        reviews=ReviewService(store, materializer, sms),
    )


@lru_cache(maxsize=1)
def get_services() -> Services:
    return build_services()
