"""Service provider helpers for wiring the pipeline with its ports.

``get_pipeline`` and ``get_flow`` return objects wired with the ERP
repository, the database lock manager and either the HTTP gateway clients
(``settings.USE_HTTP_ADAPTERS``) or the in-process stubs used by tests and
local development.
"""

from django.conf import settings

from .adapters import ActivationStub, OrderServiceStub
from .assembler import Assembler
from .erp import ErpRepository
from .http_adapters import HttpActivationClient, HttpOrderClient
from .locks import LockManager
from .pipeline import FulfillmentFlow, ValidationPipeline


def _ports():
    erp = ErpRepository()
    locks = LockManager()
    if getattr(settings, "USE_HTTP_ADAPTERS", False):
        return erp, locks, HttpActivationClient(), HttpOrderClient(erp)
    return erp, locks, ActivationStub(), OrderServiceStub(erp)


def get_pipeline() -> ValidationPipeline:
    """Return a ValidationPipeline wired according to settings."""
    erp, locks, activation, orders = _ports()
    return ValidationPipeline(erp=erp, locks=locks, activation=activation, orders=orders)


def get_flow() -> FulfillmentFlow:
    """Return a FulfillmentFlow wired according to settings."""
    erp, locks, activation, orders = _ports()
    return FulfillmentFlow(
        erp=erp,
        locks=locks,
        activation=activation,
        orders=orders,
        assembler=Assembler(erp, locks),
    )
