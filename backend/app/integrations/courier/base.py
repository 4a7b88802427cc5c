from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class ShipmentResult:
    shipment_id: str
    tracking_number: str
    carrier: str = ""
    waybill_url: str | None = None
    qr_code_url: str | None = None
    raw: dict | None = None

    def to_dict(self) -> dict:
        return {
            "shipment_id": self.shipment_id,
            "tracking_number": self.tracking_number,
            "carrier": self.carrier,
            "waybill_url": self.waybill_url,
            "qr_code_url": self.qr_code_url,
        }


@dataclass
class TrackingResult:
    tracking_number: str
    status: str
    events: list = field(default_factory=list)
    raw: dict | None = None


@dataclass
class CancelResult:
    cancelled: bool
    # courier refused because the parcel is already collected, in transit or delivered
    too_late: bool = False
    message: str = ""
    raw: dict | None = None


class CourierClient:
    name = "unknown"

    def create_shipment(self, *, reference: str, collection: dict, delivery: dict, parcel: dict | None = None) -> ShipmentResult:
        raise NotImplementedError

    def create_locker_shipment(self, *, reference: str, locker_id: str, collection: dict, recipient: dict) -> ShipmentResult:
        raise NotImplementedError

    def track_shipment(self, tracking_number: str) -> TrackingResult:
        raise NotImplementedError

    def list_lockers(self, *, latitude: float | None = None, longitude: float | None = None, radius_km: float | None = None) -> list[dict]:
        raise NotImplementedError

    def cancel_shipment(self, tracking_number: str, *, reason: str = "") -> CancelResult:
        raise NotImplementedError

    def ping(self) -> bool:
        return True
