"""
supabase_store.py — Supabase-backed implementations of the collaborator ports.

Tables:
  productos          id, codigo, codigo_barras, nombre, precio, alicuota_iva
  stock              producto_codigo, sucursal_id, cantidad
  stock_movimientos  producto_codigo, sucursal_id, cantidad, stock_anterior, stock_posterior, tipo
  clientes           id, nombre, documento, condicion_iva, email, telefono, direccion
  pagos              id, comprobante, tipo, sucursal_id, operador_id, metodo, monto, detalle, anulado
  comprobantes       id, tipo, numero, numero_formateado, sucursal_id, estado, data (jsonb)
  numeracion         tipo, sucursal_id, ultimo   (unique tipo+sucursal_id)
  caja               id, sucursal_id, fecha, estado (abierta | cerrada)

Counters and stock are updated with a compare-and-set on the previous value
(`.eq("ultimo", expected)` / `.eq("cantidad", current)`), so concurrent
terminals never hand out the same number or oversell silently.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Optional

from postgrest.exceptions import APIError

from facturador.core.errors import InsufficientStock, NumberingConflict
from facturador.schemas.models import (
    Client,
    CommittedDocument,
    DocumentType,
    PaymentEntry,
    Product,
    TaxCondition,
)
from facturador.services.ports import SequenceKey
from facturador.utils.doc_helpers import normalize_cuit

logger = logging.getLogger(__name__)

STOCK_CAS_ATTEMPTS = 3


def _row_to_product(row: dict) -> Product:
    return Product(
        id=str(row["id"]) if row.get("id") is not None else None,
        code=row["codigo"],
        barcode=row.get("codigo_barras"),
        name=row["nombre"],
        price=Decimal(str(row.get("precio") or 0)),
        tax_rate=Decimal(str(row.get("alicuota_iva") if row.get("alicuota_iva") is not None else 21)),
    )


def _row_to_client(row: dict) -> Client:
    return Client(
        id=str(row["id"]),
        name=row["nombre"],
        document=row.get("documento") or "0",
        tax_condition=TaxCondition(row.get("condicion_iva") or TaxCondition.CONSUMIDOR_FINAL.value),
        email=row.get("email"),
        phone=row.get("telefono"),
        address=row.get("direccion"),
    )


class SupabaseCatalog:
    def __init__(self, supabase: Any):
        self.db = supabase

    def find_by_code(self, code: str) -> Optional[Product]:
        result = self.db.table("productos").select("*").eq("codigo", code).limit(1).execute()
        return _row_to_product(result.data[0]) if result.data else None

    def find_by_barcode(self, barcode: str) -> Optional[Product]:
        result = self.db.table("productos").select("*").eq("codigo_barras", barcode).limit(1).execute()
        return _row_to_product(result.data[0]) if result.data else None

    def search_by_name(self, query: str, limit: int = 20) -> list[Product]:
        result = (
            self.db.table("productos").select("*")
            .or_(f"nombre.ilike.%{query}%,codigo.ilike.%{query}%")
            .order("nombre").limit(limit).execute()
        )
        return [_row_to_product(row) for row in result.data or []]

    def stock_at(self, product_code: str, branch_id: str) -> int:
        result = (
            self.db.table("stock").select("cantidad")
            .eq("producto_codigo", product_code).eq("sucursal_id", branch_id).execute()
        )
        if not result.data:
            return 0
        return int(result.data[0].get("cantidad") or 0)


class SupabaseStockKeeper:
    def __init__(self, supabase: Any):
        self.db = supabase

    def decrement(self, product_code: str, quantity: int, branch_id: str) -> None:
        self._move(product_code, -quantity, branch_id, "venta")

    def increment(self, product_code: str, quantity: int, branch_id: str) -> None:
        self._move(product_code, quantity, branch_id, "reversion")

    def _move(self, product_code: str, delta: int, branch_id: str, tipo: str) -> None:
        for _ in range(STOCK_CAS_ATTEMPTS):
            row = (
                self.db.table("stock").select("cantidad")
                .eq("producto_codigo", product_code).eq("sucursal_id", branch_id).execute()
            )
            current = int(row.data[0]["cantidad"]) if row.data else 0
            updated = current + delta
            if updated < 0:
                raise InsufficientStock(product_code, current, -delta)

            result = (
                self.db.table("stock").update({"cantidad": updated})
                .eq("producto_codigo", product_code).eq("sucursal_id", branch_id)
                .eq("cantidad", current).execute()
            )
            if result.data:
                self.db.table("stock_movimientos").insert({
                    "producto_codigo": product_code,
                    "sucursal_id": branch_id,
                    "cantidad": delta,
                    "stock_anterior": current,
                    "stock_posterior": updated,
                    "tipo": tipo,
                }).execute()
                return
            logger.warning(f"Stock of {product_code}@{branch_id} changed concurrently, re-reading")

        raise RuntimeError(f"No se pudo actualizar el stock de {product_code} (modificación concurrente)")


class SupabaseClientDirectory:
    def __init__(self, supabase: Any):
        self.db = supabase

    def find_by_identifier(self, identifier: str) -> Optional[Client]:
        result = self.db.table("clientes").select("*").eq("id", identifier).limit(1).execute()
        if not result.data:
            digits = normalize_cuit(identifier)
            if not digits:
                return None
            result = self.db.table("clientes").select("*").eq("documento", digits).limit(1).execute()
        return _row_to_client(result.data[0]) if result.data else None

    def search(self, query: str, limit: int = 20) -> list[Client]:
        result = (
            self.db.table("clientes").select("*")
            .or_(f"nombre.ilike.%{query}%,documento.ilike.%{query}%")
            .order("nombre").limit(limit).execute()
        )
        return [_row_to_client(row) for row in result.data or []]

    def create(self, client: Client) -> Client:
        record = {
            "id": client.id,
            "nombre": client.name,
            "documento": normalize_cuit(client.document) or "0",
            "condicion_iva": client.tax_condition.value,
            "email": client.email,
            "telefono": client.phone,
            "direccion": client.address,
        }
        result = self.db.table("clientes").insert(record).execute()
        return _row_to_client(result.data[0]) if result.data else client


class SupabasePaymentLedger:
    def __init__(self, supabase: Any):
        self.db = supabase

    def record(self, entry: PaymentEntry) -> str:
        result = self.db.table("pagos").insert({
            "comprobante": entry.document_number,
            "tipo": entry.document_type.value,
            "sucursal_id": entry.branch_id,
            "operador_id": entry.operator_id,
            "metodo": entry.method,
            "monto": float(entry.amount),
            "detalle": entry.details,
            "anulado": False,
        }).execute()
        return str(result.data[0]["id"])

    def void(self, entry_id: str) -> None:
        self.db.table("pagos").update({"anulado": True}).eq("id", entry_id).execute()


class SupabaseDocumentStore:
    def __init__(self, supabase: Any):
        self.db = supabase

    def persist(self, document: CommittedDocument) -> str:
        result = self.db.table("comprobantes").insert({
            "tipo": document.document_type.value,
            "numero": document.number,
            "numero_formateado": document.formatted_number,
            "sucursal_id": document.branch.id,
            "estado": document.authorization_status.value,
            "cae": document.authorization_code,
            "total": float(document.totals.grand_total),
            "data": document.model_dump(mode="json"),
        }).execute()
        return str(result.data[0]["id"])

    def get(self, document_id: str) -> Optional[CommittedDocument]:
        result = self.db.table("comprobantes").select("id, data").eq("id", document_id).limit(1).execute()
        if not result.data:
            return None
        return self._row_to_document(result.data[0])

    def list_quotes(self, branch_id: str) -> list[CommittedDocument]:
        result = (
            self.db.table("comprobantes").select("id, data")
            .eq("tipo", DocumentType.PRESUPUESTO.value).eq("sucursal_id", branch_id)
            .order("numero", desc=True).execute()
        )
        return [self._row_to_document(row) for row in result.data or []]

    @staticmethod
    def _row_to_document(row: dict) -> CommittedDocument:
        return CommittedDocument.model_validate({**row["data"], "id": str(row["id"])})


class SupabaseSequenceStore:
    def __init__(self, supabase: Any):
        self.db = supabase

    def last_issued(self, key: SequenceKey) -> int:
        document_type, branch_id = key
        result = (
            self.db.table("numeracion").select("ultimo")
            .eq("tipo", document_type.value).eq("sucursal_id", branch_id).execute()
        )
        return int(result.data[0]["ultimo"]) if result.data else 0

    def reserve(self, key: SequenceKey, expected_last: int, new_last: int) -> bool:
        document_type, branch_id = key
        result = (
            self.db.table("numeracion").update({"ultimo": new_last})
            .eq("tipo", document_type.value).eq("sucursal_id", branch_id)
            .eq("ultimo", expected_last).execute()
        )
        if result.data:
            return True
        if expected_last != 0:
            return False

        # First number for this key: the unique constraint decides the race.
        try:
            self.db.table("numeracion").insert({
                "tipo": document_type.value, "sucursal_id": branch_id, "ultimo": new_last,
            }).execute()
            return True
        except APIError as e:
            if e.code == "23505":
                return False
            raise NumberingConflict(f"Error de numeración: {e.message}")


class SupabaseCashRegister:
    """Reads the register (caja) the cash-desk screens open and close per branch and day."""

    def __init__(self, supabase: Any):
        self.db = supabase

    def is_open(self, branch_id: str, day: date) -> bool:
        result = (
            self.db.table("caja").select("id")
            .eq("sucursal_id", branch_id).eq("fecha", day.isoformat()).eq("estado", "abierta")
            .limit(1).execute()
        )
        return bool(result.data)
