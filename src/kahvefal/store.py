from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from .credits import CreditsLedger
from .errors import PurchaseError, ValidationError

PURCHASE_VERIFIED = "verified"
PURCHASE_UNVERIFIED = "unverified"
PURCHASE_CANCELLED = "cancelled"
PURCHASE_PENDING = "pending"


@dataclass(frozen=True)
class CreditPack:
    product_id: str
    credits: int
    price: float
    currency: str = "USD"

    @property
    def display_title(self) -> str:
        return f"{self.credits} Credits" if self.credits != 1 else "1 Credit"

    @property
    def formatted_price(self) -> str:
        return f"{self.price:.2f} {self.currency}"


DEFAULT_CATALOG = (
    CreditPack("kahvefal.credits1", 1, 0.49),
    CreditPack("kahvefal.credits3", 3, 0.99),
    CreditPack("kahvefal.credits10", 10, 1.99),
    CreditPack("kahvefal.credits50", 50, 8.99),
)


@dataclass(frozen=True)
class PurchaseResult:
    status: str
    product_id: str
    transaction_id: Optional[str] = None
    message: str = ""


class PurchaseProcessor(Protocol):
    def purchase(self, pack: CreditPack) -> PurchaseResult:
        ...


class EntitlementStore:
    """Credit-pack catalog; a verified purchase credits the ledger with the pack size."""

    def __init__(
        self,
        ledger: CreditsLedger,
        processor: PurchaseProcessor,
        catalog: Iterable[CreditPack] = DEFAULT_CATALOG,
        info_cb: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._ledger = ledger
        self._processor = processor
        self._catalog: Dict[str, CreditPack] = {p.product_id: p for p in catalog}
        self._lock = threading.Lock()
        self._info_cb = info_cb
        self.in_progress = False

    def catalog(self) -> List[CreditPack]:
        return sorted(self._catalog.values(), key=lambda p: p.price)

    def pack(self, product_id: str) -> CreditPack:
        try:
            return self._catalog[product_id]
        except KeyError:
            available = ", ".join(sorted(self._catalog))
            raise ValidationError(f"Unknown product '{product_id}'. Available: {available}") from None

    def purchase(self, product_id: str) -> int:
        pack = self.pack(product_id)
        if not self._lock.acquire(blocking=False):
            raise PurchaseError("Another purchase is already in progress")
        self.in_progress = True
        try:
            result = self._processor.purchase(pack)
        finally:
            self.in_progress = False
            self._lock.release()

        if result.status == PURCHASE_VERIFIED:
            balance = self._ledger.credit(pack.credits)
            self._info(f"purchase verified product={pack.product_id} credits={pack.credits} balance={balance}")
            return pack.credits
        if result.status == PURCHASE_UNVERIFIED:
            raise PurchaseError(f"Purchase of {pack.product_id} could not be verified: {result.message}")
        self._info(f"purchase {result.status} product={pack.product_id}")
        return 0

    def _info(self, message: str) -> None:
        if self._info_cb:
            self._info_cb(message)


class SandboxPurchaseProcessor:
    """Grants every purchase without a payment provider; for local and test use."""

    def purchase(self, pack: CreditPack) -> PurchaseResult:
        return PurchaseResult(
            status=PURCHASE_VERIFIED,
            product_id=pack.product_id,
            transaction_id=f"sandbox-{uuid.uuid4().hex[:12]}",
            message="sandbox",
        )
