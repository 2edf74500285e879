from __future__ import annotations

import logging
import math
import time
from typing import Any, Dict, List, Optional, Union

from botforge.core.errors import ValidationError
from botforge.persistence.record_store import TEMPLATES, RecordStore
from botforge.templates.models import SL_MODES, TP_MODES, OrderType, SizeMode, Template

log = logging.getLogger("botforge.templates")


def validate_template(t: Template) -> None:
    if t.is_multi_coin and t.pair:
        raise ValidationError(
            "multi-coin template must not carry a single pair",
            details={"pairs": t.pairs, "pair": t.pair},
        )
    if not math.isfinite(t.size) or t.size <= 0:
        raise ValidationError("template size must be > 0")
    if not math.isfinite(t.leverage) or t.leverage < 1:
        raise ValidationError("template leverage must be >= 1")
    if t.size_mode not in {m.value for m in SizeMode}:
        raise ValidationError(f"unknown size mode: {t.size_mode}")
    if t.order_type not in {o.value for o in OrderType}:
        raise ValidationError(f"unknown order type: {t.order_type}")
    if t.take_profit.enabled and t.take_profit.mode not in TP_MODES:
        raise ValidationError(f"unknown take profit mode: {t.take_profit.mode}")
    if t.stop_loss.enabled and t.stop_loss.mode not in SL_MODES:
        raise ValidationError(f"unknown stop loss mode: {t.stop_loss.mode}")


class TemplateService:
    def __init__(self, store: RecordStore):
        self.store = store

    def save(self, template: Union[Template, Dict[str, Any]]) -> Template:
        """Insert or replace. Keeps the original `created_at` on update."""
        t = template if isinstance(template, Template) else Template.from_dict(template)
        validate_template(t)

        existing = self.store.get_by_id(TEMPLATES, t.id)
        if existing is not None:
            t.created_at = int(existing.get("created_at") or t.created_at)
        t.updated_at = int(time.time() * 1000)

        if existing is not None:
            self.store.update_by_id(TEMPLATES, t.id, t.to_dict())
        else:
            self.store.insert(TEMPLATES, t.to_dict())
        log.info("template saved id=%s name=%s", t.id, t.name)
        return t

    def get(self, template_id: Optional[str]) -> Optional[Template]:
        if not template_id:
            return None
        raw = self.store.get_by_id(TEMPLATES, template_id)
        return Template.from_dict(raw) if raw else None

    def list(self) -> List[Template]:
        return [Template.from_dict(r) for r in self.store.get_all(TEMPLATES)]

    def delete(self, template_id: str) -> bool:
        return self.store.delete_by_id(TEMPLATES, template_id)
