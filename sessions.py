from typing import Callable, Dict

import structlog
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from cart import CartLedger
from checkout import CheckoutSession
from firebase_util import StoreError

logger = structlog.get_logger(__name__)


class SessionRegistry:
    """In-memory checkout sessions keyed by session id.

    Carts are loaded from the store the first time a session is seen and
    written back after every mutation. Applied coupons live only here.
    Sessions are only touched from the event loop; store calls are pushed
    to the threadpool.
    """

    def __init__(self):
        self._sessions: Dict[str, CheckoutSession] = {}

    async def get(self, session_id: str, store) -> CheckoutSession:
        session = self._sessions.get(session_id)
        if session is not None:
            return session

        raw = await run_in_threadpool(store.load_cart, session_id)
        try:
            cart = CartLedger.from_lines(raw)
        except ValidationError as e:
            raise StoreError(f"Cart for {session_id} is malformed: {e}") from e

        # Another request may have loaded it while we waited
        session = self._sessions.setdefault(session_id, CheckoutSession(session_id, cart))
        logger.info("Loaded session", session_id=session_id, lines=len(session.cart))
        return session

    async def save(self, session: CheckoutSession, store) -> None:
        await run_in_threadpool(store.save_cart, session.session_id, session.cart.lines)

    async def mutate(self, session: CheckoutSession, store, change: Callable[[CheckoutSession], object]):
        """Apply change to the cart and persist it.

        If the save fails the cart goes back to what it was before, so a
        retried request is applied once.
        """
        async with session.lock:
            before = session.cart.lines
            result = change(session)
            try:
                await self.save(session, store)
            except StoreError:
                session.restore_cart(before)
                raise
            return result

    def discard(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
