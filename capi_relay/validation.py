import re
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict

Scalar = Union[str, int, float]
_BRACKETED = re.compile(r'^(\w+)\[(\w+)\]$')


class Customer(BaseModel):
    model_config = ConfigDict(extra='allow')

    email: Optional[str] = None
    email_hash: Optional[str] = None


class ThriveCartOrder(BaseModel):
    """Order webhook sent by the ThriveCart checkout."""
    model_config = ConfigDict(extra='allow')

    order_id: Optional[Scalar] = None
    invoice_id: Optional[Scalar] = None
    transaction_id: Optional[Scalar] = None
    order_total: Optional[Scalar] = None
    charge_total: Optional[Scalar] = None
    currency: Optional[str] = None
    product_id: Optional[Scalar] = None
    fbp: Optional[str] = None
    fbc: Optional[str] = None
    event_id: Optional[str] = None
    eid: Optional[str] = None
    customer: Optional[Customer] = None

    @property
    def resolved_order_id(self) -> Optional[str]:
        for candidate in (self.order_id, self.invoice_id, self.transaction_id):
            if candidate not in (None, ''):
                return str(candidate)
        return None

    @property
    def resolved_value(self) -> float:
        raw = self.order_total if self.order_total not in (None, '') else self.charge_total
        try:
            return float(raw or 0)
        except (TypeError, ValueError):
            return 0.0

    @property
    def resolved_currency(self) -> str:
        return (self.currency or 'EUR').upper()

    @property
    def content_ids(self) -> Optional[List[str]]:
        if self.product_id in (None, ''):
            return None
        return [f"tc_{self.product_id}"]

    def to_event(self, now: int) -> Dict[str, Any]:
        # event_id doubles as the dedup key against the browser pixel
        user_data = {
            'fbp': self.fbp,
            'fbc': self.fbc,
        }
        if self.customer:
            user_data['external_id'] = self.customer.email_hash
            user_data['email'] = self.customer.email

        custom_data = {
            'value': self.resolved_value,
            'currency': self.resolved_currency,
            'order_id': self.resolved_order_id,
            'content_ids': self.content_ids,
        }
        event = {
            'event_name': 'Purchase',
            'event_time': now,
            'event_id': self.event_id or self.eid,
            'action_source': 'website',
            'user_data': _compact(user_data),
            'custom_data': _compact(custom_data),
        }
        return _compact(event, keep=('user_data',))


def _compact(mapping, keep=()):
    return {k: v for k, v in mapping.items() if k in keep or v not in (None, '')}


def fold_form(fields: Dict[str, str]) -> Dict[str, Any]:
    """Nest bracketed form keys: ``customer[email]`` -> ``{'customer': {'email': ...}}``."""
    folded: Dict[str, Any] = {}
    for key, value in fields.items():
        match = _BRACKETED.match(key)
        if match:
            parent, child = match.groups()
            nested = folded.get(parent)
            if not isinstance(nested, dict):
                nested = folded[parent] = {}
            nested[child] = value
        else:
            folded.setdefault(key, value)
    return folded
