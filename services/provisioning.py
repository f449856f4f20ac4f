"""
Provisioning Dispatcher
Queues domain activation and hosting account creation once payment is confirmed

Dispatch is fire-and-forget relative to the payment path: the request is
recorded in provisioning_requests, an activator (if registered) runs in a
background task, and the caller returns immediately. Activation failures are
reported through admin alerts and events; they never touch payment state.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import httpx

from admin_alerts import AlertCategory, AlertSeverity
from models import ProvisioningKind
from services import events
from services.errors import ProvisioningDispatchFailure
from services.events import EventDispatcher
from services.repositories import ProvisioningQueue

logger = logging.getLogger(__name__)

ACTIONS = {
    ProvisioningKind.DOMAIN: 'activate',
    ProvisioningKind.HOSTING: 'create',
}

Activator = Callable[[Dict[str, Any]], Awaitable[None]]

class HttpActivator:
    """Posts a provisioning request to a downstream activation endpoint"""

    def __init__(self, url: str, client: httpx.AsyncClient):
        self.url = url
        self.client = client

    async def __call__(self, request: Dict[str, Any]) -> None:
        response = await self.client.post(self.url, json=request)
        response.raise_for_status()

class ProvisioningDispatcher:

    def __init__(self, queue: ProvisioningQueue, activators: Optional[Dict[ProvisioningKind, Activator]] = None,
                 event_dispatcher: Optional[EventDispatcher] = None):
        self.queue = queue
        self.activators = dict(activators or {})
        self.event_dispatcher = event_dispatcher
        self._tasks: Set[asyncio.Task] = set()

    async def request_provisioning(self, ref_id: str, kind: ProvisioningKind, order_id: str,
                                   payload: Optional[Dict[str, Any]] = None) -> int:
        """
        Queue follow-on work for a paid order line

        Args:
            ref_id: Domain name or hosting plan reference
            kind: domain or hosting
            order_id: Owning order
            payload: Extra activation data (years, nameservers, package)

        Returns:
            int: provisioning request id

        Raises:
            ProvisioningDispatchFailure: If the request could not be recorded
        """
        action = ACTIONS[kind]
        payload = dict(payload or {})
        try:
            request_id, created = await self.queue.enqueue(order_id, ref_id, kind, action, payload)
        except Exception as e:
            logger.error(f"❌ Failed to queue {kind.value} provisioning for order {order_id}: {e}")
            raise ProvisioningDispatchFailure(f"Could not queue {kind.value} provisioning: {e}")

        if not created:
            logger.info(f"🔒 {kind.value} {action} for {ref_id} already queued (order {order_id}, request {request_id})")
            return request_id

        logger.info(f"📦 Queued {kind.value} {action} for {ref_id} (order {order_id}, request {request_id})")

        activator = self.activators.get(kind)
        if activator is not None:
            request = {'request_id': request_id, 'order_id': order_id, 'ref_id': ref_id,
                       'kind': kind.value, 'action': action, 'payload': payload}
            task = asyncio.create_task(self._run_activator(activator, request))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        return request_id

    async def _run_activator(self, activator: Activator, request: Dict[str, Any]) -> None:
        request_id = request['request_id']
        try:
            await activator(request)
        except Exception as e:
            logger.error(f"❌ Provisioning request {request_id} ({request['kind']} {request['ref_id']}) failed: {e}")
            await self._record_failure(request, str(e))
            return

        await self.queue.set_status(request_id, 'dispatched')
        logger.info(f"✅ Provisioning request {request_id} dispatched")

    async def _record_failure(self, request: Dict[str, Any], error: str) -> None:
        try:
            await self.queue.set_status(request['request_id'], 'failed', error)
        except Exception as e:
            logger.error(f"❌ Could not mark provisioning request {request['request_id']} failed: {e}")

        if self.event_dispatcher is None:
            return
        await self.event_dispatcher.drain([
            events.alert(
                'provisioning_failed', request['order_id'], AlertSeverity.ERROR, AlertCategory.PROVISIONING,
                f"{request['kind']} {request['action']} failed for {request['ref_id']}",
                request_id=request['request_id'], error=error,
            ),
            events.audit('provisioning_failed', request['order_id'], ref_id=request['ref_id'],
                         provisioning_kind=request['kind'], error=error),
        ])

    async def wait_idle(self) -> None:
        """Wait for in-flight activators (used on shutdown)"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
