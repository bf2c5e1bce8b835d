"""Record shapes.

A :class:`RecordShape` parametrizes the reconciliation pipeline for one
topic (table): which field is the key, how incomplete rows are filled in,
how the REST snapshot is ordered and how the mirror is sorted for display.
The orders and menu dashboards both run the same pipeline, configured by
the two shapes defined at the bottom of this module.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from pydashsync.models._base import Record


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _default_sort_key(record: Record) -> Any:
    return (str(type(record.id).__name__), record.id)


@dataclasses.dataclass(frozen=True)
class RecordShape:
    """Description of one mirrored table.

    Parameters
    ----------
    topic : str
        Table name; also used as the realtime channel topic.
    key : str
        Name of the field that identifies a row.
    defaults : mapping
        Field defaults applied when a row omits a field or carries ``None``
        or an empty string.  Callables are invoked to produce the value.
    order : tuple of str
        PostgREST ``order`` terms used for the snapshot fetch
        (e.g. ``("created_at.desc",)``).
    sort_key : callable
        Key function used to order :meth:`ReconciliationStore.records`.
        ``reverse_sort`` flips the order.
    fields : frozenset of str
        Fields a user may edit.  Empty means any field.
    integer_key : bool
        Whether new ids are allocated locally as ``max(id) + 1``.
    """

    topic: str
    key: str = "id"
    defaults: Mapping[str, Any] = dataclasses.field(default_factory=dict)
    order: tuple[str, ...] = ()
    sort_key: Callable[[Record], Any] = _default_sort_key
    reverse_sort: bool = False
    fields: frozenset[str] = frozenset()
    integer_key: bool = False

    def default_for(self, name: str) -> Any:
        value = self.defaults.get(name)
        return value() if callable(value) else value

    def is_editable(self, name: str) -> bool:
        if name == self.key:
            return False
        return not self.fields or name in self.fields


# ------------------------------------------------------------------
# Dashboard shapes
# ------------------------------------------------------------------

ORDER_STATUSES: tuple[str, ...] = ("Aguardando", "Em preparo", "Pronto", "Enviado", "Entregue")
PAYMENT_STATUSES: tuple[str, ...] = ("Aguardando pagamento", "Pago")


def _order_sort_key(record: Record) -> str:
    return str(record.get("hora_criacao_pedido") or "")


ORDERS = RecordShape(
    topic="Comandas",
    key="telefone_key",
    defaults={
        "comanda": ".",
        "nome_cliente": "",
        "status_pedido": ORDER_STATUSES[0],
        "pagamento": PAYMENT_STATUSES[0],
        "hora_criacao_pedido": _now_iso,
    },
    order=("hora_criacao_pedido.desc",),
    sort_key=_order_sort_key,
    reverse_sort=True,
    fields=frozenset({"comanda", "nome_cliente", "status_pedido", "pagamento"}),
)


MENU_CATEGORIES: tuple[str, ...] = (
    "Marmita do dia",
    "Marmita clássica",
    "Mix de salada",
    "Bebida",
    "Adicional",
    "Unidade",
)


def _menu_sort_key(record: Record) -> tuple[int, str]:
    category = record.get("categoria")
    try:
        rank = MENU_CATEGORIES.index(category)
    except ValueError:
        rank = len(MENU_CATEGORIES)
    return rank, str(record.get("nome_produto") or "").casefold()


MENU = RecordShape(
    topic="Cárdapio",
    key="id",
    defaults={
        "nome_produto": "",
        "categoria": "",
        "descricao_produto": "",
        "observacao": "",
        "promocoes": "",
    },
    order=("categoria.asc", "nome_produto.asc"),
    sort_key=_menu_sort_key,
    fields=frozenset(
        {"nome_produto", "categoria", "disponivel", "descricao_produto", "observacao", "promocoes"}
    ),
    integer_key=True,
)

SHAPES: dict[str, RecordShape] = {"orders": ORDERS, "menu": MENU}
