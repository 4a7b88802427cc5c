from __future__ import annotations

import hashlib

from app.integrations.courier.base import CancelResult, CourierClient, ShipmentResult, TrackingResult


def _tracking(reference: str) -> str:
    return "MOCK" + hashlib.sha1(reference.encode("utf-8")).hexdigest()[:10].upper()


class MockCourierClient(CourierClient):
    name = "mock"

    def create_shipment(self, *, reference: str, collection: dict, delivery: dict, parcel: dict | None = None) -> ShipmentResult:
        tracking = _tracking(reference)
        return ShipmentResult(
            shipment_id=f"shp_{tracking.lower()}",
            tracking_number=tracking,
            carrier="mock",
            waybill_url=f"https://example.com/labels/{tracking}.pdf",
            raw={"reference": reference},
        )

    def create_locker_shipment(self, *, reference: str, locker_id: str, collection: dict, recipient: dict) -> ShipmentResult:
        tracking = _tracking(f"{reference}:{locker_id}")
        return ShipmentResult(
            shipment_id=f"shp_{tracking.lower()}",
            tracking_number=tracking,
            carrier="mock-locker",
            waybill_url=f"https://example.com/labels/{tracking}.pdf",
            qr_code_url=f"https://example.com/qr/{tracking}.png",
            raw={"reference": reference, "locker_id": locker_id},
        )

    def track_shipment(self, tracking_number: str) -> TrackingResult:
        return TrackingResult(tracking_number=tracking_number, status="pending", events=[], raw={})

    def list_lockers(self, *, latitude: float | None = None, longitude: float | None = None, radius_km: float | None = None) -> list[dict]:
        return [
            {"id": "LKR-MOCK-001", "name": "Mock Campus Locker", "address": "1 University Ave"},
            {"id": "LKR-MOCK-002", "name": "Mock Mall Locker", "address": "2 Main Rd"},
        ]

    def cancel_shipment(self, tracking_number: str, *, reason: str = "") -> CancelResult:
        return CancelResult(cancelled=True, message="cancelled", raw={"tracking_number": tracking_number})
