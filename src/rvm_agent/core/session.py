"""
Session Aggregator

Opens, extends and ends multi-item user sessions, keeps their timers,
and appends finished session summaries to a JSON history file.
"""

import asyncio
import json
import logging
import time
from collections import defaultdict
from typing import Callable, Dict, List, Optional

from .errors import ConcurrencyViolation, ProtocolError
from .messages import SessionUpdate
from .models import Item, MachineContext, Session
from .watchdog import TimerClass

SESSION_TIMERS = (TimerClass.SESSION_INACTIVITY, TimerClass.SESSION_MAX_DURATION)


class SessionAggregator:
    """
    Multi-item session lifecycle

    Callbacks:
    - opened(session): session started
    - closing(reason): summary about to be published
    - closed(summary): session cleared after the settle delay
    """

    def __init__(self, context: MachineContext, timers, publisher, dispatcher, timing,
                 history_file: Optional[str] = None, sleep=asyncio.sleep):
        """
        Initialize Session Aggregator

        Args:
            context: Machine context owned by the cycle controller
            timers: TimerSupervisor
            publisher: Outbound message publisher
            dispatcher: CommandDispatcher for the end-of-session reset
            timing: TimingConfig
            history_file: JSON file for finished sessions (None to disable)
            sleep: Awaitable sleep function
        """
        self.logger = logging.getLogger(__name__)
        self.context = context
        self.timers = timers
        self.publisher = publisher
        self.dispatcher = dispatcher
        self.timing = timing
        self.history_file = history_file
        self._sleep = sleep

        self.session: Optional[Session] = None
        self.pending_end_reason: Optional[str] = None
        self._finalizing = False
        self._finalize_task: Optional[asyncio.Task] = None
        self._cleared: Optional[asyncio.Event] = None

        self.history: List[Dict] = []
        self.totals = defaultdict(int)

        self.callbacks: Dict[str, List[Callable]] = {
            'opened': [],
            'closing': [],
            'closed': [],
        }

        if self.history_file:
            self.load()

    def register_callback(self, event: str, callback: Callable):
        """
        Register a lifecycle callback

        Args:
            event: 'opened', 'closing' or 'closed'
            callback: Function or coroutine function
        """
        self.callbacks[event].append(callback)

    async def _notify(self, event: str, data):
        for callback in self.callbacks[event]:
            try:
                result = callback(data)
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error("Session %s callback error: %s", event, e, exc_info=True)

    @property
    def is_active(self) -> bool:
        """True while a session is open and not ending"""
        return self.session is not None and self.session.active

    @property
    def has_pending_end(self) -> bool:
        """True when an end was deferred behind an in-flight cycle"""
        return self.session is not None and self.pending_end_reason is not None

    async def start_session(self, token: str, user_id: Optional[str] = None,
                            user_data: Optional[Dict] = None, is_guest: bool = False) -> Session:
        """
        Open a new session

        Raises:
            ConcurrencyViolation: A session already exists
            ProtocolError: Missing session token
        """
        if self.session is not None:
            self.logger.warning("Session start rejected: session %s still open",
                                self.session.session_id)
            raise ConcurrencyViolation(f"Session {self.session.session_id} already open")

        if not token:
            raise ProtocolError("Session start without token")

        session = Session(session_id=str(token), user_id=user_id,
                          user_data=dict(user_data or {}), is_guest=is_guest)
        self.session = session
        self.pending_end_reason = None

        self.timers.start(TimerClass.SESSION_INACTIVITY, self.timing.session_inactivity,
                          self._on_expired, 'timeout')
        self.timers.start(TimerClass.SESSION_MAX_DURATION, self.timing.session_max_duration,
                          self._on_expired, 'max_duration')

        kind = 'Guest' if is_guest else 'Member'
        self.logger.info("%s session started: %s (user %s)", kind, session.session_id, user_id)
        self.publisher.publish(SessionUpdate(state='active', message=f"{kind} session started",
                                             summary={'sessionId': session.session_id,
                                                      'userId': user_id,
                                                      'isGuest': is_guest}))

        await self._notify('opened', session)
        return session

    async def _on_expired(self, reason: str):
        if self.session is None:
            return
        self.logger.warning("Session %s expired (%s)", self.session.session_id, reason)
        await self.end_session(reason)

    def add_item(self, item: Item):
        """Append an accepted item and restart the inactivity timer"""
        if self.session is None:
            self.logger.warning("Item dropped: no session (%s)", item.category.value)
            return

        self.session.add(item)
        self.logger.info("Item %d added: %s %.1fg (total %.1fg)",
                         self.session.item_count, item.category.value,
                         item.weight, self.session.total_weight)
        self.touch()

    def touch(self):
        """Restart the inactivity timer on user activity"""
        if self.is_active:
            self.timers.start(TimerClass.SESSION_INACTIVITY, self.timing.session_inactivity,
                              self._on_expired, 'timeout')

    async def end_session(self, reason: str, force: bool = False,
                          reset_hardware: bool = True) -> bool:
        """
        End the current session

        Args:
            reason: End reason reported in the summary
            force: Finalize even if a cycle is in flight
            reset_hardware: Run the best-effort hardware reset

        Returns:
            True if the session was finalized now, False if deferred or absent
        """
        session = self.session
        if session is None:
            self.logger.info("End session (%s) ignored: no session", reason)
            return False

        if not session.active and not force:
            self.logger.info("End session (%s) ignored: already ending", reason)
            return False

        session.active = False
        self.timers.cancel_all(*SESSION_TIMERS)

        if self.context.in_flight and not force:
            self.pending_end_reason = reason
            self.logger.info("Session %s end deferred until cycle completes (%s)",
                             session.session_id, reason)
            return False

        await self.finalize(reason, reset_hardware=reset_hardware)
        return True

    async def finalize(self, reason: Optional[str] = None, reset_hardware: bool = True):
        """Publish the summary, reset hardware, settle and clear the session"""
        session = self.session
        if session is None or self._finalizing:
            return

        reason = reason or self.pending_end_reason or 'unknown'
        self._finalizing = True
        self._finalize_task = asyncio.current_task()
        self._cleared = asyncio.Event()
        try:
            session.active = False
            self.pending_end_reason = None
            self.timers.cancel_all(*SESSION_TIMERS)

            await self._notify('closing', reason)

            summary = session.summary(reason)
            self.logger.info("Session %s complete (%s): %d items, %.1fg",
                             session.session_id, reason, session.item_count, session.total_weight)
            self.publisher.publish(SessionUpdate(state='session_complete', message=reason,
                                                 summary=summary))
            self._record(summary)

            if reset_hardware:
                await self.dispatcher.safe_stop()

            await self._sleep(self.timing.session_settle)
            self.session = None
            await self._notify('closed', summary)
        finally:
            # Cancelled during settle: clear without a second summary
            if self.session is session:
                self.session = None
            self._finalizing = False
            self._finalize_task = None
            self._cleared.set()

    async def abort(self, reason: str, reset_hardware: bool = False) -> bool:
        """
        End the session immediately (emergency stop, reset, shutdown)

        A session already being finalized is not summarized again; the
        call waits until it is cleared instead.

        Returns:
            True if this call finalized the session
        """
        if self._finalizing:
            if self._finalize_task is not asyncio.current_task():
                self.logger.info("Session already closing, waiting for clear-down (%s)", reason)
                await self._cleared.wait()
            return False

        if self.session is None:
            return False
        return await self.end_session(reason, force=True, reset_hardware=reset_hardware)

    def _record(self, summary: Dict):
        self.history.append(summary)
        self.totals['sessions'] += 1
        self.totals['items'] += summary['itemCount']
        self.totals['weight'] = round(self.totals['weight'] + summary['totalWeight'], 1)
        if self.history_file:
            self.save()

    def get_totals(self) -> Dict:
        """Get lifetime session totals"""
        return dict(self.totals)

    def save(self):
        """Save session history to JSON file"""
        try:
            data = {
                'sessions': self.history,
                'totals': dict(self.totals),
                'last_updated': time.time()
            }

            with open(self.history_file, 'w') as f:
                json.dump(data, f, indent=2, ensure_ascii=False)

            self.logger.debug("Session history saved to %s", self.history_file)

        except Exception as e:
            self.logger.error("Failed to save session history: %s", e)

    def load(self):
        """Load session history from JSON file"""
        try:
            with open(self.history_file, 'r') as f:
                data = json.load(f)

            self.history = data.get('sessions', [])
            self.totals.clear()
            self.totals.update(data.get('totals', {}))

            self.logger.info("Session history loaded from %s (%d sessions)",
                             self.history_file, len(self.history))

        except FileNotFoundError:
            self.logger.info("No existing session history, starting fresh")
        except Exception as e:
            self.logger.error("Failed to load session history: %s", e)

