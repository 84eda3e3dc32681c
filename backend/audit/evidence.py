"""
Evidence payloads attached to audit flags.

One frozen dataclass per rule code, carrying exactly the numbers its
message interpolates. as_meta() produces the JSON stored in
audit_flags.meta with camelCase keys, rounded for reporting.
"""

from dataclasses import dataclass, field
from typing import ClassVar

from db.models import RuleCode
from metrics.stats import round_currency, round_rate


@dataclass(frozen=True)
class CancelRateEvidence:
    rule_code: ClassVar[RuleCode] = RuleCode.HIGH_CANCEL_RATE

    entity_code: str
    entity_name: str
    cancel_rate: float
    total_orders: int
    cancelled_orders: int
    warn_threshold: float
    high_threshold: float

    def as_meta(self) -> dict:
        return {
            "entityCode": self.entity_code,
            "entityName": self.entity_name,
            "cancelRate": round_rate(self.cancel_rate),
            "totalOrders": self.total_orders,
            "cancelledOrders": self.cancelled_orders,
            "warnThreshold": self.warn_threshold,
            "highThreshold": self.high_threshold,
        }


@dataclass(frozen=True)
class EndOfMonthEvidence:
    rule_code: ClassVar[RuleCode] = RuleCode.END_OF_MONTH_SPIKE

    end_of_month_orders: int
    rest_of_month_orders: int
    total_orders: int
    percentage: float
    expected_percentage: float
    spike_ratio: float
    end_of_month_days: int

    def as_meta(self) -> dict:
        return {
            "endOfMonthOrders": self.end_of_month_orders,
            "restOfMonthOrders": self.rest_of_month_orders,
            "totalOrders": self.total_orders,
            "percentage": round_rate(self.percentage),
            "expectedPercentage": self.expected_percentage,
            "spikeRatio": round_currency(self.spike_ratio),
            "endOfMonthDays": self.end_of_month_days,
        }


@dataclass(frozen=True)
class PreShipCancelEvidence:
    rule_code: ClassVar[RuleCode] = RuleCode.PRE_SHIP_CANCEL

    pre_ship_cancellations: int
    total_cancellations: int
    percentage: float
    threshold_hours: float
    by_reason: dict[str, int] = field(default_factory=dict)

    def as_meta(self) -> dict:
        return {
            "preShipCancellations": self.pre_ship_cancellations,
            "totalCancellations": self.total_cancellations,
            "percentage": round_rate(self.percentage),
            "thresholdHours": self.threshold_hours,
            "byReason": dict(self.by_reason),
        }


@dataclass(frozen=True)
class AbnormalOrderEvidence:
    rule_code: ClassVar[RuleCode] = RuleCode.ABNORMAL_ORDER_SIZE

    order_number: str
    outlet_id: str
    outlet_name: str
    order_amount: float
    outlet_median: float
    ratio: float
    outlet_order_count: int

    def as_meta(self) -> dict:
        return {
            "orderNumber": self.order_number,
            "outletId": self.outlet_id,
            "outletName": self.outlet_name,
            "orderAmount": round_currency(self.order_amount),
            "outletMedian": round_currency(self.outlet_median),
            "ratio": round_currency(self.ratio),
            "outletOrderCount": self.outlet_order_count,
        }


@dataclass(frozen=True)
class DistanceEvidence:
    rule_code: ClassVar[RuleCode] = RuleCode.DISTANCE_TOO_FAR

    check_in_lat: float
    check_in_lng: float
    outlet_lat: float | None
    outlet_lng: float | None
    distance: float
    threshold: float

    def as_meta(self) -> dict:
        return {
            "checkInLat": self.check_in_lat,
            "checkInLng": self.check_in_lng,
            "outletLat": self.outlet_lat,
            "outletLng": self.outlet_lng,
            "distance": round(self.distance, 2),
            "threshold": self.threshold,
        }


@dataclass(frozen=True)
class DuplicatePhotoEvidence:
    rule_code: ClassVar[RuleCode] = RuleCode.DUPLICATE_PHOTO

    original_visit_id: str
    original_outlet_code: str
    original_outlet_name: str
    original_check_in_time: str
    sha256: str

    def as_meta(self) -> dict:
        return {
            "originalVisitId": self.original_visit_id,
            "originalOutlet": {"code": self.original_outlet_code, "name": self.original_outlet_name},
            "originalCheckInTime": self.original_check_in_time,
            "sha256": self.sha256,
        }


Evidence = (
    CancelRateEvidence
    | EndOfMonthEvidence
    | PreShipCancelEvidence
    | AbnormalOrderEvidence
    | DistanceEvidence
    | DuplicatePhotoEvidence
)
