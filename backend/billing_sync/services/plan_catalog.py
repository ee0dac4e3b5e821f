"""Static plan catalog: internal plan codes <-> Stripe price/product ids"""
import logging
from typing import Dict, List, Optional

from billing_sync.core.config import settings
from billing_sync.core.errors import CatalogUnresolved

logger = logging.getLogger(__name__)


class PlanCatalog:
    """
    Single source of truth for plan <-> Stripe Price/Product mapping.
    Loaded from the PLAN_CATALOG setting; never calls the provider.
    """

    def __init__(self, plans: Optional[Dict[str, Dict[str, str]]] = None):
        self._plans = dict(settings.PLAN_CATALOG if plans is None else plans)
        self._by_provider_id = {}
        for plan_id, entry in self._plans.items():
            for key in ("price_id", "product_id"):
                provider_id = entry.get(key)
                if provider_id:
                    self._by_provider_id[provider_id] = plan_id
        logger.info(f"Plan catalog loaded: {len(self._plans)} plan(s)")

    def resolve(self, price_or_product_id: Optional[str]) -> str:
        """Plan code for a provider price or product id

        Raises:
            CatalogUnresolved: id is empty or unknown
        """
        plan_id = self._by_provider_id.get(price_or_product_id) if price_or_product_id else None
        if not plan_id:
            raise CatalogUnresolved(price_or_product_id)
        return plan_id

    def price_for(self, plan_id: str) -> str:
        """Stripe price id for a plan code

        Raises:
            CatalogUnresolved: plan unknown or has no price
        """
        entry = self._plans.get(plan_id)
        if not entry or not entry.get("price_id"):
            raise CatalogUnresolved(plan_id)
        return entry["price_id"]

    def has_plan(self, plan_id: str) -> bool:
        return plan_id in self._plans

    def list_plans(self) -> List[Dict[str, str]]:
        return [
            {"id": plan_id, "name": entry.get("name", plan_id.capitalize()), "price_id": entry.get("price_id")}
            for plan_id, entry in sorted(self._plans.items())
        ]
