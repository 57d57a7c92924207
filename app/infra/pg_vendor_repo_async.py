# app/infra/pg_vendor_repo_async.py
"""
Async PostgreSQL vendor repository (asyncpg).
"""
from __future__ import annotations
import json
from typing import Any, Optional

from app.core.dispatch.domain import ComplianceIssue, GeoPoint, Vendor, VendorBilling
from app.infra.db_resilience_async import retry_on_transient_error, safe_db_conn

_UPSERT_SQL = """
    INSERT INTO vendors (id, name, phone, city, services, heavy_duty, lat, lng,
                         active, updates_paused, billing, compliance_status,
                         compliance_missing)
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11::jsonb, $12, $13::jsonb)
    ON CONFLICT (id) DO UPDATE SET
        name = EXCLUDED.name,
        phone = EXCLUDED.phone,
        city = EXCLUDED.city,
        services = EXCLUDED.services,
        heavy_duty = EXCLUDED.heavy_duty,
        lat = EXCLUDED.lat,
        lng = EXCLUDED.lng,
        active = EXCLUDED.active,
        updates_paused = EXCLUDED.updates_paused,
        billing = EXCLUDED.billing,
        compliance_status = EXCLUDED.compliance_status,
        compliance_missing = EXCLUDED.compliance_missing,
        updated_at = now()
"""


def _json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _row_to_vendor(row) -> Vendor:
    billing = _json(row["billing"]) or {}
    missing = _json(row["compliance_missing"]) or []
    location = None
    if row["lat"] is not None and row["lng"] is not None:
        location = GeoPoint(lat=float(row["lat"]), lng=float(row["lng"]))

    return Vendor(
        id=row["id"],
        name=row["name"],
        phone=row["phone"],
        city=row["city"],
        services=list(row["services"] or []),
        heavy_duty=row["heavy_duty"],
        location=location,
        active=row["active"],
        updates_paused=row["updates_paused"],
        billing=VendorBilling(
            provider=billing.get("provider"),
            customer_id=billing.get("customer_id"),
            default_payment_method_id=billing.get("default_payment_method_id"),
        ),
        compliance_status=row["compliance_status"],
        compliance_missing=[
            ComplianceIssue(key=item.get("key", ""), label=item.get("label", ""), reason=item.get("reason", ""))
            for item in missing
            if isinstance(item, dict)
        ],
    )


def _vendor_params(vendor: Vendor) -> list[Any]:
    return [
        vendor.id,
        vendor.name,
        vendor.phone,
        vendor.city,
        list(vendor.services),
        vendor.heavy_duty,
        vendor.location.lat if vendor.location else None,
        vendor.location.lng if vendor.location else None,
        vendor.active,
        vendor.updates_paused,
        json.dumps({
            "provider": vendor.billing.provider,
            "customer_id": vendor.billing.customer_id,
            "default_payment_method_id": vendor.billing.default_payment_method_id,
        }),
        vendor.compliance_status,
        json.dumps([
            {"key": issue.key, "label": issue.label, "reason": issue.reason}
            for issue in vendor.compliance_missing
        ]),
    ]


class AsyncPostgresVendorRepository:
    @retry_on_transient_error()
    async def get(self, vendor_id: str) -> Optional[Vendor]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM vendors WHERE id = $1", vendor_id)
            return _row_to_vendor(row) if row else None

    @retry_on_transient_error()
    async def find_by_phone(self, phone: str) -> Optional[Vendor]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM vendors WHERE phone = $1", phone)
            return _row_to_vendor(row) if row else None

    @retry_on_transient_error()
    async def create(self, vendor: Vendor) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(_UPSERT_SQL, *_vendor_params(vendor))

    @retry_on_transient_error()
    async def save(self, vendor: Vendor) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(_UPSERT_SQL, *_vendor_params(vendor))

    @retry_on_transient_error()
    async def list_active(self) -> list[Vendor]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch("SELECT * FROM vendors WHERE active ORDER BY id")
            return [_row_to_vendor(row) for row in rows]

    @retry_on_transient_error()
    async def list_all(self) -> list[Vendor]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch("SELECT * FROM vendors ORDER BY id")
            return [_row_to_vendor(row) for row in rows]
