from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import List, Optional

from liminalflow.logging import get_logger
from liminalflow.service.errors import NotFoundError
from liminalflow.storage.models import Flow, FlowVariant
from liminalflow.storage.repository import FlowRepository

logger = get_logger(__name__)

# bucket resolution: 100.00 distinct percentage points
_BUCKET_SCALE = 10_000


def traffic_bucket(base_flow_id: str, subject: str) -> float:
    """Map ``(base_flow_id, subject)`` onto ``[0, 100)`` deterministically."""
    digest = hashlib.sha256(f"{base_flow_id}:{subject}".encode("utf-8")).digest()
    return (int.from_bytes(digest[:8], "big") % _BUCKET_SCALE) / 100.0


@dataclass
class VariantSelection:
    flow: Flow
    variant_id: Optional[str] = None
    bucket: Optional[float] = None

    @property
    def is_variant(self) -> bool:
        return self.variant_id is not None


class VariantSelector:
    """Assigns an execution to a flow variant by cumulative traffic buckets."""

    def __init__(self, flows: FlowRepository) -> None:
        self.flows = flows

    def _active_variants(self, base_flow: Flow) -> List[FlowVariant]:
        variants = [
            variant
            for variant in self.flows.get_variants(base_flow.id)
            if variant.is_active and variant.traffic_percentage > 0
        ]
        variants.sort(key=lambda variant: (variant.priority, variant.id))
        return variants

    def _load(self, variant: FlowVariant, base_flow: Flow) -> Optional[Flow]:
        flow = self.flows.get_flow_by_id(variant.variant_flow_id)
        if flow is None:
            logger.warning(
                "variant_flow_missing",
                base_flow_id=base_flow.id,
                variant_id=variant.id,
                variant_flow_id=variant.variant_flow_id,
            )
        return flow

    def select(
        self,
        base_flow: Flow,
        *,
        subject: str,
        force_variant_id: Optional[str] = None,
        enabled: bool = True,
    ) -> VariantSelection:
        """Pick the flow graph for one execution.

        ``subject`` is the user id when known, otherwise the execution id.
        Traffic not covered by a variant stays with the base flow.
        """
        if force_variant_id:
            for variant in self.flows.get_variants(base_flow.id):
                if variant.id == force_variant_id:
                    flow = self._load(variant, base_flow)
                    if flow is None:
                        raise NotFoundError(
                            f"flow {variant.variant_flow_id} for variant {variant.id} not found"
                        )
                    return VariantSelection(flow=flow, variant_id=variant.id)
            raise NotFoundError(
                f"variant {force_variant_id} not found for flow {base_flow.id}",
                detail={"variant_id": force_variant_id},
            )
        if not enabled:
            return VariantSelection(flow=base_flow)

        variants = self._active_variants(base_flow)
        if not variants:
            return VariantSelection(flow=base_flow)
        total = sum(variant.traffic_percentage for variant in variants)
        if total > 100:
            logger.warning(
                "variant_traffic_over_allocated",
                base_flow_id=base_flow.id,
                total_percentage=total,
            )
            return VariantSelection(flow=base_flow)

        bucket = traffic_bucket(base_flow.id, subject)
        cumulative = 0.0
        for variant in variants:
            cumulative += variant.traffic_percentage
            if bucket < cumulative:
                flow = self._load(variant, base_flow)
                if flow is None:
                    break
                logger.info(
                    "variant_selected",
                    base_flow_id=base_flow.id,
                    variant_id=variant.id,
                    bucket=bucket,
                )
                return VariantSelection(flow=flow, variant_id=variant.id, bucket=bucket)
        return VariantSelection(flow=base_flow, bucket=bucket)
