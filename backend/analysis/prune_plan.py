from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Tuple


@dataclass(frozen=True)
class PruneTargets:
    product_ids: List[int] = field(default_factory=list)
    plant_ids: List[int] = field(default_factory=list)
    offer_ids: List[int] = field(default_factory=list)

    def as_dict(self):
        return {
            "product_ids": list(self.product_ids),
            "plant_ids": list(self.plant_ids),
            "offer_ids": list(self.offer_ids),
        }


@dataclass(frozen=True)
class PrunePlan:
    product_ids_to_delete: List[int]
    plant_ids_to_delete: List[int]
    offer_ids_to_delete: List[int]
    refresh_offer_summary_product_ids: List[int]

    @property
    def is_empty(self) -> bool:
        return not (self.product_ids_to_delete or self.plant_ids_to_delete or self.offer_ids_to_delete)


def unique_sorted(ids: Iterable[object]) -> List[int]:
    return sorted({int(i) for i in ids if i is not None and str(i) != ""})


def build_prune_plan(targets: PruneTargets, offer_rows: Iterable[Tuple[int, int]]) -> PrunePlan:
    """Expand candidate ids into a full deletion plan.

    ``offer_rows`` are ``(offer_id, product_id)`` pairs for every offer that is
    either a candidate itself or belongs to a candidate product. Offers of a
    doomed product are doomed too; products that merely lose some offers
    survive and need their offer summary recomputed.
    """
    rows = [(int(o), int(p)) for o, p in offer_rows]
    products = unique_sorted(targets.product_ids)
    plants = unique_sorted(targets.plant_ids)
    doomed_products = set(products)

    offers = unique_sorted(
        list(targets.offer_ids) + [offer_id for offer_id, product_id in rows if product_id in doomed_products]
    )
    doomed_offers = set(offers)

    refresh = unique_sorted(
        product_id
        for offer_id, product_id in rows
        if offer_id in doomed_offers and product_id not in doomed_products
    )
    return PrunePlan(
        product_ids_to_delete=products,
        plant_ids_to_delete=plants,
        offer_ids_to_delete=offers,
        refresh_offer_summary_product_ids=refresh,
    )


__all__ = ["PruneTargets", "PrunePlan", "unique_sorted", "build_prune_plan"]
