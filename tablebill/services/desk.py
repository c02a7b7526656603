"""
Billing desk: the surface a restaurant's UI binds to.

    desk = BillingDesk("r1", billing, live_view)
    bill = desk.get_bill("5")            # last recomputed view
    await desk.pay_table_gated("5")      # returns True/False

Bills shown here may lag the store by one recompute; pay calls never
use them, the billing service always filters live.
"""

from typing import Optional

from tablebill.schemas import TableBill
from tablebill.services.billing import BillingResult, BillingStateMachine
from tablebill.services.live_view import LiveViewSynchronizer


class BillingDesk:
    def __init__(
        self,
        restaurant_id: str,
        billing: BillingStateMachine,
        live_view: LiveViewSynchronizer,
    ):
        self.restaurant_id = restaurant_id
        self.billing = billing
        self.live_view = live_view
        self.last_result: Optional[BillingResult] = None

    def get_bill(self, table_number: str) -> TableBill:
        return self.live_view.get_bill(self.restaurant_id, table_number)

    async def pay_table_session(
        self,
        session_id: str,
        payment_method: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> bool:
        self.last_result = await self.billing.pay_session(
            self.restaurant_id, session_id, payment_method, transaction_id
        )
        return self.last_result.success

    async def pay_table_gated(
        self,
        table_number: str,
        payment_method: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> bool:
        """False only on store failure; an incomplete table is a successful no-op."""
        self.last_result = await self.billing.pay_table_gated(
            self.restaurant_id, table_number, payment_method, transaction_id
        )
        return self.last_result.success

    async def pay_table_override(
        self,
        table_number: str,
        payment_method: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> bool:
        self.last_result = await self.billing.pay_table_override(
            self.restaurant_id, table_number, payment_method, transaction_id
        )
        return self.last_result.success
