"""
Call controller for one agent's dialer.

Drives outgoing and incoming calls through the call-control proxy and
publishes every status change onto the event bus, so popups, history
panels and controls stay in sync without referencing each other.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Set, Tuple

from dialer.call.pingback import PingbackEvent, PingbackKind, clean_number
from dialer.client.session import CallSessionClient
from dialer.config import settings
from dialer.errors import CallActionError, PermissionDeniedError
from dialer.events.bus import EventBus
from dialer.events.models import (
    CallStatus,
    EventKind,
    OutgoingCallEvent,
    incoming_call_id,
)
from dialer.utils.logging import LoggerMixin, call_context
from dialer.utils.throttle import rate_limit

# Provider response codes
STATUS_OK = 1
STATUS_ALREADY_ENDED = 2


@dataclass
class AgentPermissions:
    """What the signed-in agent may do on the dialer."""
    can_make_calls: bool = True
    can_conference_calls: bool = True


@dataclass
class AgentIdentity:
    """Who is signed in, used to route incoming calls."""
    phone_number: Optional[str] = None
    agent_id: Optional[str] = None
    username: Optional[str] = None
    is_admin: bool = False


def _is_assigned(data: Mapping[str, Any]) -> bool:
    return bool(clean_number(data.get("Agent_number")) or data.get("Agent_ID"))


class CallController(LoggerMixin):
    """
    Owns the state of the agent's current outgoing and incoming call.

    State changes are published on the injected bus; the controller never
    talks to subscribers directly.
    """

    def __init__(
        self,
        client: CallSessionClient,
        bus: EventBus,
        cli_number: str,
        permissions: Optional[AgentPermissions] = None,
        agent: Optional[AgentIdentity] = None,
        redial_min_interval: Optional[float] = None,
        ended_clear_delay: Optional[float] = None,
    ):
        self.client = client
        self.bus = bus
        self.cli_number = cli_number
        self.permissions = permissions or AgentPermissions()
        self.agent = agent or AgentIdentity()
        self.ended_clear_delay = (
            settings.ended_clear_delay if ended_clear_delay is None else ended_clear_delay
        )

        self.token: Optional[str] = None
        self.outgoing: Optional[OutgoingCallEvent] = None
        self.reference_id: Optional[str] = None
        self.hold_status: Optional[str] = None
        self.incoming: Optional[Dict[str, Any]] = None
        self.incoming_connected = False

        self._last_dialed: Optional[Tuple[str, str]] = None
        self._clear_tasks: Set[asyncio.Task] = set()

        self.redial = rate_limit(
            self._redial,
            settings.redial_min_interval if redial_min_interval is None else redial_min_interval,
        )

    @property
    def call_active(self) -> bool:
        return self.outgoing is not None and not self.outgoing.is_ended

    async def authenticate(self) -> str:
        """Fetch a fresh token for this agent's line."""
        self.token = await self.client.fetch_auth_token(self.cli_number)
        self.logger.info("Dialer authenticated", cli=self.cli_number)
        return self.token

    async def _ensure_token(self) -> str:
        if not self.token:
            await self.authenticate()
        return self.token

    async def _action(self, action: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        token = await self._ensure_token()
        response = await self.client.invoke_call_action(token, action, payload)
        if not isinstance(response, dict):
            raise CallActionError(f"{action} returned an unexpected response", details=response)
        return response

    async def _log(self, status: str, b_party: Optional[str] = None):
        if not self.reference_id:
            return
        await self.client.log_call_event(
            self.reference_id,
            status,
            cli=self.cli_number,
            a_party=self._last_dialed[0] if self._last_dialed else None,
            b_party=b_party or (self._last_dialed[1] if self._last_dialed else None),
        )

    def _publish_outgoing(self, kind: EventKind, event: OutgoingCallEvent):
        self.outgoing = event
        with call_context(event.call_id):
            self.bus.publish(kind, event)

    # Outgoing calls

    async def initiate_call(self, a_party: str, b_party: str) -> OutgoingCallEvent:
        """
        Start an outgoing click-to-call.

        Args:
            a_party: Agent's number, dialed first by the provider
            b_party: Customer's number

        Returns:
            The ringing call event

        Raises:
            PermissionDeniedError: If the agent may not make calls
            CallActionError: If a call is already active or the provider refuses
            AuthenticationError: If no token could be obtained
        """
        if not self.permissions.can_make_calls:
            raise PermissionDeniedError("You do not have permission to make calls")
        if not a_party or not b_party:
            raise ValueError("Both the agent and the dialed number are required")
        if self.call_active:
            raise CallActionError("A call is already in progress")

        self._flush_pending_clears()

        self.reference_id = f"ref_{int(time.time() * 1000)}"
        self._last_dialed = (a_party, b_party)
        self.hold_status = None

        initiating = OutgoingCallEvent(call_id=self.reference_id, to=b_party)
        self._publish_outgoing(EventKind.OUTGOING_CALL_INITIATED, initiating)

        # Any failure from here on, cancellation included, must end the call
        try:
            await self._log("initiated")
            response = await self._action("initiate-call", {
                "cli": self.cli_number,
                "apartyno": a_party,
                "bpartyno": b_party,
                "reference_id": self.reference_id,
                "dtmfflag": 0,
                "recordingflag": 0,
            })

            message = response.get("message")
            provider_call_id = message.get("callid") if isinstance(message, dict) else None
            if response.get("status") != STATUS_OK or not provider_call_id:
                raise CallActionError("Call initiation failed", details=response)
        except BaseException as e:
            if isinstance(e, Exception):
                await self._log("failed")
            self._end_outgoing(delay=0)
            raise

        ringing = initiating.with_status(CallStatus.RINGING, call_id=str(provider_call_id))
        self._publish_outgoing(EventKind.OUTGOING_CALL_UPDATED, ringing)
        await self._log("ringing")

        self.logger.info("Outgoing call ringing", reference_id=self.reference_id)
        return ringing

    async def _redial(self) -> OutgoingCallEvent:
        if not self._last_dialed:
            raise CallActionError("No previous call to redial")
        return await self.initiate_call(*self._last_dialed)

    async def disconnect(self) -> bool:
        """
        Hang up the active outgoing call.

        Returns:
            True once the call is ended

        Raises:
            CallActionError: If there is no active call or the provider refuses
        """
        if not self.call_active:
            raise CallActionError("No active call")

        response = await self._action("CallDisconnection", {
            "cli": self.cli_number,
            "call_id": self.outgoing.call_id,
        })

        status = response.get("status")
        if status == STATUS_OK:
            await self._log("disconnected")
            self._end_outgoing()
            return True
        if status == STATUS_ALREADY_ENDED:
            await self._log("ended_by_user")
            self._end_outgoing(delay=0, announce=False)
            return True

        raise CallActionError("Call disconnect failed", details=response)

    async def toggle_hold(self) -> Optional[str]:
        """
        Put the active call on hold, or resume it.

        Returns:
            "hold" or "resume", or None if the call had already ended
        """
        if not self.call_active:
            raise CallActionError("No active call")

        hold_or_resume = "0" if self.hold_status == "hold" else "1"
        response = await self._action("HoldorResume", {
            "cli": self.cli_number,
            "call_id": self.outgoing.call_id,
            "HoldorResume": hold_or_resume,
        })

        status = response.get("status")
        if status == STATUS_OK:
            self.hold_status = "hold" if hold_or_resume == "1" else "resume"
            await self._log("on_hold" if self.hold_status == "hold" else "resumed")
            return self.hold_status
        if status == STATUS_ALREADY_ENDED:
            await self._log("ended_by_user")
            self._end_outgoing(delay=0, announce=False)
            return None

        raise CallActionError("Hold/Resume failed", details=response)

    async def start_conference(self, number: str) -> Optional[OutgoingCallEvent]:
        """
        Bring a third party into the active call.

        Returns:
            The updated call event, or None if the call had already ended
        """
        if not self.permissions.can_conference_calls:
            raise PermissionDeniedError("You do not have permission to start conference calls")
        if not number:
            raise ValueError("A conference number is required")
        if not self.call_active:
            raise CallActionError("No active call")

        response = await self._action("callConference", {
            "cli": self.cli_number,
            "call_id": self.outgoing.call_id,
            "cparty_number": number,
        })

        status = response.get("status")
        if status == STATUS_OK:
            await self._log("conference_started")
            conference = self.outgoing.with_status(CallStatus.CONNECTED, to=f"Conference: {number}")
            self._publish_outgoing(EventKind.OUTGOING_CALL_UPDATED, conference)
            return conference
        if status == STATUS_ALREADY_ENDED:
            await self._log("ended_by_user")
            self._end_outgoing(delay=0, announce=False)
            return None

        raise CallActionError("Conference failed", details=response)

    def _end_outgoing(self, delay: Optional[float] = None, announce: bool = True):
        """
        Move the outgoing call to Ended.

        With announce, an updated(Ended) event goes out first and the
        ended event follows after the delay, so popups can show the final
        state briefly.
        """
        if self.outgoing is None:
            return

        if announce and not self.outgoing.is_ended:
            ended = self.outgoing.with_status(CallStatus.ENDED)
            self._publish_outgoing(EventKind.OUTGOING_CALL_UPDATED, ended)

        self.hold_status = None
        delay = self.ended_clear_delay if delay is None else delay

        if delay <= 0:
            self._clear_outgoing()
            return

        task = asyncio.ensure_future(self._clear_outgoing_later(delay))
        self._clear_tasks.add(task)
        task.add_done_callback(self._clear_tasks.discard)

    async def _clear_outgoing_later(self, delay: float):
        await asyncio.sleep(delay)
        self._clear_outgoing()

    def _clear_outgoing(self):
        self.outgoing = None
        self.reference_id = None
        self.bus.publish(EventKind.OUTGOING_CALL_ENDED, None)

    def _flush_pending_clears(self):
        # Finished tasks have already published their ended event
        pending = [task for task in self._clear_tasks if not task.done()]
        self._clear_tasks.clear()
        if not pending:
            return
        for task in pending:
            task.cancel()
        self._clear_outgoing()

    # Incoming calls

    async def answer_incoming(self) -> Dict[str, Any]:
        """Answer the ringing incoming call."""
        call_id = incoming_call_id(self.incoming) if self.incoming else None
        if not call_id:
            raise CallActionError("No incoming call")

        response = await self._action("AnswerCall", {"call_id": call_id})
        if response.get("status") != STATUS_OK:
            raise CallActionError("Answer failed", details=response)

        self.incoming_connected = True
        self.logger.info("Incoming call answered", call_id=call_id)
        return response

    async def reject_incoming(self) -> Dict[str, Any]:
        """Reject (or hang up) the incoming call and clear it."""
        call_id = incoming_call_id(self.incoming) if self.incoming else None
        if not call_id:
            raise CallActionError("No incoming call")

        response = await self._action("CallDisconnection", {
            "cli": self.cli_number,
            "call_id": call_id,
        })
        if response.get("status") not in (STATUS_OK, STATUS_ALREADY_ENDED):
            raise CallActionError("Reject failed", details=response)

        self._clear_incoming()
        return response

    def _clear_incoming(self):
        self.incoming = None
        self.incoming_connected = False
        self.bus.publish(EventKind.INCOMING_CALL_CLEARED, None)

    # Provider pingbacks

    def _matches_outgoing(self, event: PingbackEvent) -> bool:
        if not self.call_active:
            return False
        return event.call_id is None or event.call_id == self.outgoing.call_id

    def _matches_incoming(self, event: PingbackEvent) -> bool:
        if self.incoming is None:
            return False
        return event.call_id is None or event.call_id == incoming_call_id(self.incoming)

    def _is_outgoing_progress(self, event: PingbackEvent) -> bool:
        return (
            self.call_active
            and event.call_id is not None
            and event.call_id == self.outgoing.call_id
        )

    def _is_current_incoming(self, event: PingbackEvent) -> bool:
        return (
            self.incoming is not None
            and event.call_id is not None
            and event.call_id == incoming_call_id(self.incoming)
        )

    def _routes_to_agent(self, data: Mapping[str, Any]) -> bool:
        """
        Decide whether an incoming call belongs on this dialer.

        Admins see only unassigned calls. Agents see calls assigned to
        their number, id or username, calls dialed straight to their
        number, and unassigned calls to the line's virtual number.
        """
        agent = self.agent
        my_number = clean_number(agent.phone_number)
        assigned_number = clean_number(data.get("Agent_number"))
        assigned_id = str(data.get("Agent_ID") or "")
        target = clean_number(data.get("B_PARTY_NO"))

        if not _is_assigned(data):
            if agent.is_admin:
                return True
            return bool(target) and target in (clean_number(self.cli_number), my_number)

        if assigned_number and assigned_number == my_number:
            return True
        if assigned_id and (
            assigned_id == str(agent.agent_id or "")
            or assigned_id.lower() == (agent.username or "").lower()
        ):
            return True
        return bool(target) and target == my_number

    def handle_pingback(self, event: PingbackEvent):
        """Apply a classified provider pingback to the current calls."""
        if event.kind == PingbackKind.INCOMING_CALL:
            if self._is_outgoing_progress(event):
                return

            if not self._routes_to_agent(event.data):
                ongoing = self._is_current_incoming(event)
                if ongoing and _is_assigned(event.data):
                    self.logger.info("Incoming call taken by another agent", call_id=event.call_id)
                    self._clear_incoming()
                    return
                if not ongoing:
                    self.logger.debug("Incoming call routed elsewhere", call_id=event.call_id)
                    return

            self.incoming = event.data
            self.incoming_connected = False
            self.bus.publish(EventKind.INCOMING_CALL_RECEIVED, event.data)
            return

        if event.kind == PingbackKind.ANSWERED_CALL:
            if self._matches_incoming(event):
                self.incoming_connected = True
            if self._matches_outgoing(event) and self.outgoing.status != CallStatus.CONNECTED:
                connected = self.outgoing.with_status(CallStatus.CONNECTED)
                self._publish_outgoing(EventKind.OUTGOING_CALL_UPDATED, connected)
            return

        if event.kind.is_terminal:
            if self._matches_incoming(event):
                self._clear_incoming()
            if self._matches_outgoing(event):
                self._end_outgoing()

    async def close(self):
        """Cancel delayed clears; pending ended events are published now."""
        self._flush_pending_clears()
