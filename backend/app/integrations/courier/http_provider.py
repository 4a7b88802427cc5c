from __future__ import annotations

from app.integrations.common import GatewayError, GatewayFailure
from app.integrations.courier.base import CancelResult, CourierClient, ShipmentResult, TrackingResult
from app.integrations.http import JsonHttpClient

# courier refusal codes meaning the parcel has already left the seller
TOO_LATE_CODES = {"already_collected", "in_transit", "delivered", "collected"}


class HttpCourierClient(CourierClient):
    name = "courier_guy"

    def __init__(self, *, api_key: str, base_url: str, timeout: float = 30.0, retries: int = 2, retry_delay: float = 1.0, client: JsonHttpClient | None = None):
        self.client = client or JsonHttpClient(
            provider=self.name,
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=timeout,
            retries=retries,
            retry_delay=retry_delay,
        )

    def _shipment(self, body: dict) -> ShipmentResult:
        data = body.get("data") if isinstance(body.get("data"), dict) else body
        tracking = str(data.get("tracking_reference") or data.get("tracking_number") or "").strip()
        if not tracking:
            raise GatewayError(GatewayFailure.API_ERROR, "courier returned no tracking number", provider=self.name, raw=body)
        return ShipmentResult(
            shipment_id=str(data.get("id") or data.get("shipment_id") or tracking),
            tracking_number=tracking,
            carrier=str(data.get("courier_name") or data.get("carrier") or self.name),
            waybill_url=data.get("waybill_url"),
            qr_code_url=data.get("qr_code_url"),
            raw=body,
        )

    def create_shipment(self, *, reference: str, collection: dict, delivery: dict, parcel: dict | None = None) -> ShipmentResult:
        body = self.client.request(
            "POST",
            "/shipment",
            json={
                "custom_tracking_reference": reference,
                "collection_contact": collection,
                "delivery_contact": delivery,
                "parcels": [parcel or {"description": "Textbook", "weight_kg": 1.0}],
            },
        )
        return self._shipment(body)

    def create_locker_shipment(self, *, reference: str, locker_id: str, collection: dict, recipient: dict) -> ShipmentResult:
        body = self.client.request(
            "POST",
            "/shipment",
            json={
                "custom_tracking_reference": reference,
                "service_type": "locker",
                "locker_id": locker_id,
                "collection_contact": collection,
                "delivery_contact": recipient,
                "parcels": [{"description": "Textbook", "weight_kg": 1.0}],
            },
        )
        return self._shipment(body)

    def track_shipment(self, tracking_number: str) -> TrackingResult:
        body = self.client.request("GET", f"/tracking/{tracking_number}")
        data = body.get("data") if isinstance(body.get("data"), dict) else body
        return TrackingResult(
            tracking_number=tracking_number,
            status=str(data.get("status") or "unknown").strip().lower(),
            events=list(data.get("events") or data.get("checkpoints") or []),
            raw=body,
        )

    def list_lockers(self, *, latitude: float | None = None, longitude: float | None = None, radius_km: float | None = None) -> list[dict]:
        params = {}
        if latitude is not None and longitude is not None:
            params = {"lat": latitude, "lng": longitude, "radius": radius_km or 10}
        body = self.client.request("GET", "/lockers", params=params or None)
        items = body.get("data") if "data" in body else body.get("lockers")
        return list(items or [])

    def cancel_shipment(self, tracking_number: str, *, reason: str = "") -> CancelResult:
        try:
            body = self.client.request(
                "POST",
                "/shipment/cancel",
                json={"tracking_reference": tracking_number, "cancellation_reason": reason or "Cancelled by seller"},
            )
        except GatewayError as e:
            code = str((e.raw or {}).get("code") or "").strip().lower()
            if e.failure == GatewayFailure.CLIENT_ERROR and (e.status_code == 409 or code in TOO_LATE_CODES):
                return CancelResult(cancelled=False, too_late=True, message=e.message, raw=e.raw)
            raise
        return CancelResult(cancelled=True, message=str(body.get("message") or "cancelled"), raw=body)

    def ping(self) -> bool:
        self.client.request("GET", "/lockers", params={"limit": 1})
        return True
