"""
ShipStation 面单客户端

- Basic 认证（API key + secret），15 秒超时
- 429 / 5xx / 超时重试 2 次，间隔 1s、2s
- 重量统一换算为盎司
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from portal.core.config import settings
from portal.services.errors import ShipStationError

logger = logging.getLogger(__name__)

SHIPSTATION_API_BASE = "https://ssapi.shipstation.com"
SHIPSTATION_TIMEOUT_SECONDS = 15.0
SHIPSTATION_MAX_RETRIES = 2

OZ_PER_UNIT = {"oz": 1.0, "lb": 16.0, "g": 0.035274, "kg": 35.274}


@dataclass
class ShippingAddress:
    name: str
    street1: str
    city: str
    state: str
    zip: str
    country: str = "US"
    company: Optional[str] = None
    street2: Optional[str] = None
    phone: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "company": self.company or None,
            "street1": self.street1,
            "street2": self.street2 or None,
            "city": self.city,
            "state": self.state,
            "postalCode": self.zip,
            "country": self.country,
            "phone": self.phone or None,
        }

    @classmethod
    def from_order_address(cls, address: Optional[Dict[str, Any]]) -> "ShippingAddress":
        """店铺订单地址（first_name/address_1/postcode...）转换"""
        address = address or {}
        name = " ".join(p for p in (address.get("first_name"), address.get("last_name")) if p)
        return cls(
            name=name or address.get("company") or "Customer",
            company=address.get("company"),
            street1=address.get("address_1") or "",
            street2=address.get("address_2"),
            city=address.get("city") or "",
            state=address.get("state") or "",
            zip=address.get("postcode") or "",
            country=address.get("country") or "US",
            phone=address.get("phone"),
        )


@dataclass
class PackageDimensions:
    weight: float
    unit: str = "oz"
    length: float = 10
    width: float = 8
    height: float = 4
    dimension_unit: str = "in"

    def weight_oz(self) -> float:
        return round(self.weight * OZ_PER_UNIT.get(self.unit, 1.0), 2)

    def dimensions_payload(self) -> Dict[str, Any]:
        return {
            "length": self.length,
            "width": self.width,
            "height": self.height,
            "units": "centimeters" if self.dimension_unit == "cm" else "inches",
        }


def origin_address() -> ShippingAddress:
    return ShippingAddress(
        name=settings.ORIGIN_NAME,
        street1=settings.ORIGIN_STREET1,
        city=settings.ORIGIN_CITY,
        state=settings.ORIGIN_STATE,
        zip=settings.ORIGIN_ZIP,
        country=settings.ORIGIN_COUNTRY,
        phone=settings.ORIGIN_PHONE,
    )


class ShipStationClient:
    def __init__(
        self,
        api_key: str,
        api_secret: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_delay: float = 1.0,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self._transport = transport
        self.retry_delay = retry_delay

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.api_secret)

    async def _request(
        self,
        method: str,
        endpoint: str,
        body: Any = None,
        params: Optional[Dict[str, Any]] = None,
        retries: int = SHIPSTATION_MAX_RETRIES,
    ) -> Any:
        last_error: Optional[ShipStationError] = None
        async with httpx.AsyncClient(
            base_url=SHIPSTATION_API_BASE,
            auth=(self.api_key, self.api_secret),
            timeout=SHIPSTATION_TIMEOUT_SECONDS,
            transport=self._transport,
        ) as client:
            for attempt in range(retries + 1):
                try:
                    response = await client.request(method, endpoint, json=body, params=params)
                except httpx.TimeoutException:
                    last_error = ShipStationError(f"ShipStation API timeout on {method} {endpoint}", status_code=408)
                else:
                    if response.is_success:
                        return response.json() if response.content else None
                    error = ShipStationError(
                        f"ShipStation API error {response.status_code} on {method} {endpoint}",
                        status_code=response.status_code,
                        response_body=response.text,
                    )
                    if response.status_code != 429 and response.status_code < 500:
                        raise error
                    last_error = error

                if attempt < retries:
                    await asyncio.sleep(self.retry_delay * (attempt + 1))

        raise last_error or ShipStationError("ShipStation API request failed after retries")

    async def validate_address(self, address: ShippingAddress) -> Dict[str, Any]:
        try:
            result = await self._request("POST", "/addresses/validate", address.to_payload())
        except ShipStationError as e:
            return {"valid": False, "messages": [str(e)]}

        entry = result[0] if isinstance(result, list) and result else None
        verified = bool(entry) and entry.get("addressVerified") == "Address validated successfully"
        corrected = None
        if entry and entry.get("matchedAddress"):
            matched = entry["matchedAddress"]
            corrected = {
                "name": address.name,
                "street1": matched.get("street1") or address.street1,
                "street2": matched.get("street2") or address.street2,
                "city": matched.get("city") or address.city,
                "state": matched.get("state") or address.state,
                "zip": matched.get("postalCode") or address.zip,
                "country": matched.get("country") or address.country,
            }
        return {"valid": verified, "corrected_address": corrected}

    async def get_rates(self, origin: ShippingAddress, to: ShippingAddress, parcel: PackageDimensions) -> List[Dict[str, Any]]:
        result = await self._request("POST", "/shipments/getrates", {
            "carrierCode": None,
            "fromPostalCode": origin.zip,
            "toState": to.state,
            "toCountry": to.country,
            "toPostalCode": to.zip,
            "toCity": to.city,
            "weight": {"value": parcel.weight_oz(), "units": "ounces"},
            "dimensions": parcel.dimensions_payload(),
            "confirmation": "none",
            "residential": True,
        })
        return [
            {
                "carrier": (rate.get("serviceCode") or "").split("_")[0] or "unknown",
                "service": rate.get("serviceName"),
                "service_code": rate.get("serviceCode"),
                "rate_cents": round(((rate.get("shipmentCost") or 0) + (rate.get("otherCost") or 0)) * 100),
            }
            for rate in (result or [])
        ]

    async def create_label(
        self,
        origin: ShippingAddress,
        to: ShippingAddress,
        parcel: PackageDimensions,
        carrier: str,
        service: str,
    ) -> Dict[str, Any]:
        result = await self._request("POST", "/shipments/createlabel", {
            "carrierCode": carrier,
            "serviceCode": service,
            "packageCode": "package",
            "confirmation": "none",
            "shipDate": None,
            "weight": {"value": parcel.weight_oz(), "units": "ounces"},
            "dimensions": parcel.dimensions_payload(),
            "shipFrom": origin.to_payload(),
            "shipTo": to.to_payload(),
            "testLabel": False,
        })
        tracking_number = result["trackingNumber"]
        label_data = result.get("labelData")
        return {
            "shipment_id": result.get("shipmentId"),
            "tracking_number": tracking_number,
            "tracking_url": f"https://track.shipstation.com/tracking/{tracking_number}",
            "label_url": f"data:application/pdf;base64,{label_data}" if label_data else None,
            "rate_cents": round(((result.get("shipmentCost") or 0) + (result.get("insuranceCost") or 0)) * 100),
        }

    async def get_tracking(self, tracking_number: str) -> Dict[str, Any]:
        result = await self._request("GET", "/shipments", params={"trackingNumber": tracking_number})
        matches = (result or {}).get("results") or (result or {}).get("shipments") or []
        if not matches:
            return {"status": "unknown", "events": []}
        match = matches[0]
        return {
            "status": match.get("statusDescription") or "unknown",
            "estimated_delivery": match.get("estimatedDeliveryDate"),
            "events": [
                {
                    "timestamp": event.get("occurredAt"),
                    "location": ", ".join(p for p in (event.get("city"), event.get("state")) if p),
                    "description": event.get("description"),
                }
                for event in match.get("trackingEvents") or []
            ],
        }

    async def void_label(self, tracking_number: str) -> bool:
        try:
            result = await self._request("POST", "/shipments/voidlabel", {"trackingNumber": tracking_number})
        except ShipStationError as e:
            logger.warning(f"ShipStation 作废面单失败 {tracking_number}: {e}")
            return False
        return bool((result or {}).get("approved"))


def get_shipstation_client() -> ShipStationClient:
    return ShipStationClient(settings.SHIPSTATION_API_KEY, settings.SHIPSTATION_API_SECRET)
