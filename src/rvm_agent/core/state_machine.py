"""
Cycle Controller: Per-Item State Machine

States: IDLE → READY → DETECTING → CLASSIFYING → WEIGHING → PROCESSING
        → ACCEPTED | REJECTED → READY ... → SESSION_COMPLETE → IDLE
"""

import asyncio
import logging
from typing import Callable, Dict, Optional

from .classification import ClassificationGate
from .diverter import DiverterPolicy
from .errors import (CalibrationError, ConcurrencyViolation, ProtocolError,
                     SEVERITY_LEVELS, TransientActuationError, WatchdogTimeout, describe)
from .events import (BinFull, CaptureManually, ClassificationReady, EmergencyStop, EndSession,
                     ForceReset, GetStatus, ModuleIdentified, ObjectDetected, SetManualMaterial,
                     StartSession, WeightReady)
from .messages import AiResult, CycleComplete, ErrorReport, StatusUpdate, WeightResult
from .models import (Category, ClassificationResult, Item, MachineContext, MachineState,
                     WeightReading)
from .session import SessionAggregator
from .watchdog import TimerClass
from .weight import WeightNormalizer


class CycleController:
    """
    Event-Driven Cycle Controller

    State Flow:
    1. READY: session open, waiting for an object in the chamber
    2. DETECTING: debounce, then photo capture
    3. CLASSIFYING: label/confidence → category
    4. WEIGHING: weight request, bounded recalibration
    5. PROCESSING: single-flight actuation sequence under a watchdog
    6. ACCEPTED / REJECTED: feedback, then back to READY

    The controller owns the machine context and the session aggregator.
    Only this class changes `context.state`.
    """

    def __init__(self, dispatcher, timers, publisher, timing,
                 gate: Optional[ClassificationGate] = None,
                 weigher: Optional[WeightNormalizer] = None,
                 diverter: Optional[DiverterPolicy] = None,
                 min_valid_weight: float = 1.0,
                 history_file: Optional[str] = None, sleep=asyncio.sleep):
        """
        Initialize Cycle Controller

        Args:
            dispatcher: CommandDispatcher
            timers: TimerSupervisor
            publisher: Outbound message publisher
            timing: TimingConfig
            gate: Classification gate
            weigher: Weight normalizer
            diverter: Diverter routing policy (defaults to the dispatcher's)
            min_valid_weight: Weights at or below this are rejected (grams)
            history_file: Session history JSON file
            sleep: Awaitable sleep function
        """
        self.logger = logging.getLogger(__name__)
        self.dispatcher = dispatcher
        self.timers = timers
        self.publisher = publisher
        self.gate = gate or ClassificationGate()
        self.weigher = weigher or WeightNormalizer(backoff=timing.calibration_backoff,
                                                   reread_delay=timing.calibration_reread,
                                                   sleep=sleep)
        self.diverter = diverter or dispatcher.diverter
        self.timing = timing
        self.min_valid_weight = min_valid_weight
        self._sleep = sleep

        self.context = MachineContext()
        self.sessions = SessionAggregator(self.context, timers, publisher, dispatcher, timing,
                                          history_file=history_file, sleep=sleep)

        # Outstanding device requests
        self._awaiting_classification = False
        self._awaiting_weight = False
        # Bumped whenever outstanding requests are dropped
        self._epoch = 0

        self._cycle_task: Optional[asyncio.Task] = None
        self.error_count = 0

        # Callbacks
        self.callbacks = {state: [] for state in MachineState}

        self.sessions.register_callback('opened', self._on_session_opened)
        self.sessions.register_callback('closing', self._on_session_closing)
        self.sessions.register_callback('closed', self._on_session_closed)

        self.logger.info("Cycle controller initialized (diverter %s)",
                         'enabled' if self.diverter.enabled else 'disabled')

    @property
    def state(self) -> MachineState:
        return self.context.state

    def register_callback(self, state: MachineState, callback: Callable):
        """
        Register callback for state entry

        Args:
            state: State to attach callback to
            callback: Function called with the transition data
        """
        self.callbacks[state].append(callback)
        self.logger.debug("Registered callback for state: %s", state.value)

    def transition_to(self, new_state: MachineState, data: Optional[Dict] = None):
        """
        Transition to new state

        Args:
            new_state: Target state
            data: Optional data published with the status and passed to callbacks
        """
        old_state = self.context.state
        self.context.state = new_state

        self.logger.info("State transition: %s → %s", old_state.value, new_state.value)
        self.publisher.publish(StatusUpdate(state=new_state.value, previous=old_state.value,
                                            details=dict(data or {})))

        for callback in self.callbacks[new_state]:
            try:
                callback(data)
            except Exception as e:
                self.logger.error("Callback error in %s: %s", new_state.value, e)

    def report_error(self, code: str, details: Optional[Dict] = None) -> ErrorReport:
        """
        Log a catalogued error and publish it on the errors topic

        Args:
            code: Error catalog code (e.g. 'E401')
            details: Extra context

        Returns:
            Published ErrorReport
        """
        entry = describe(code)
        details = details or {}
        self.error_count += 1

        self.logger.log(SEVERITY_LEVELS.get(entry.severity, logging.ERROR),
                        "[%s] %s %s", code, entry.message, details or '')
        report = ErrorReport(code=code, severity=entry.severity, category=entry.category,
                             message=entry.message, details=details)
        self.publisher.publish(report)
        return report

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def on_start_session(self, event: StartSession):
        """Open a session (IDLE → READY)"""
        if self.context.in_flight or self.state != MachineState.IDLE:
            self.report_error('E405', {'reason': 'machine busy', 'state': self.state.value})
            return

        try:
            await self.sessions.start_session(event.token, user_id=event.user_id,
                                              user_data=event.user_data, is_guest=event.is_guest)
        except (ConcurrencyViolation, ProtocolError) as e:
            self.report_error(e.code, {'reason': str(e)})

    async def on_end_session(self, event: EndSession):
        """End the active session (deferred while a cycle is in flight)"""
        await self.sessions.end_session(event.reason)

    async def _on_session_opened(self, session):
        self._clear_requests()
        self.weigher.reset()
        await self._prepare_hardware()
        self.transition_to(MachineState.READY, {'sessionId': session.session_id,
                                                'isGuest': session.is_guest})

    async def _prepare_hardware(self):
        d = self.dispatcher
        await d.belt('stop', critical=False)
        await d.compactor('stop', critical=False)
        if self.diverter.enabled:
            await d.best_effort('move_diverter', self.diverter.home)
        await d.best_effort('calibrate_weight')
        self.context.gate_open = await d.best_effort('open_gate')
        await self._sleep(self.timing.gate_operation)

    def _on_session_closing(self, reason: str):
        if self.state != MachineState.SESSION_COMPLETE:
            self.transition_to(MachineState.SESSION_COMPLETE, {'reason': reason})

    def _on_session_closed(self, summary: Dict):
        self.timers.cancel(TimerClass.DEBOUNCE)
        self._clear_requests()
        self.context.gate_open = False
        self.transition_to(MachineState.IDLE, {'sessionId': summary.get('sessionId')})

    # ------------------------------------------------------------------
    # Device events
    # ------------------------------------------------------------------

    def on_object_detected(self, event: ObjectDetected):
        """READY → DETECTING; capture after the debounce delay"""
        if self.state != MachineState.READY or self.context.in_flight:
            self.logger.warning("Object detection dropped in %s", self.state.value)
            return
        if not self.sessions.is_active:
            self.logger.warning("Object detection dropped: no active session")
            return

        self.sessions.touch()
        self.transition_to(MachineState.DETECTING, {'code': event.code})
        self.timers.start(TimerClass.DEBOUNCE, self.timing.debounce, self._on_debounce_expired)

    async def _on_debounce_expired(self):
        if self.state != MachineState.DETECTING:
            self.logger.debug("Stale capture ignored in %s", self.state.value)
            return
        await self._request_capture()

    async def _request_capture(self):
        self._awaiting_classification = True
        try:
            await self.dispatcher.critical('capture_photo')
        except TransientActuationError as e:
            self._awaiting_classification = False
            self.report_error('E103', {'action': e.action})
            if self.state == MachineState.DETECTING:
                self._reject('capture_failed')

    async def on_classification_ready(self, event: ClassificationReady):
        """DETECTING → CLASSIFYING → WEIGHING | REJECTED"""
        if self.state != MachineState.DETECTING or not self._awaiting_classification:
            self.logger.warning("Classification '%s' dropped: none pending (%s)",
                                event.label, self.state.value)
            return

        self._awaiting_classification = False
        self.transition_to(MachineState.CLASSIFYING)

        result = self.gate.classify(event.label, event.confidence)
        payload = result.to_dict()
        if event.task_id:
            payload['taskId'] = event.task_id
        self.publisher.publish(AiResult(result=payload))

        await self._apply_classification(result)

    async def _apply_classification(self, result: ClassificationResult):
        if not result.accepted:
            matched = self.gate.match(result.label)
            if matched != Category.UNKNOWN:
                self.report_error('E201', {'label': result.label,
                                           'confidence': result.confidence})
            self._reject('unknown_material', {'label': result.label})
            return

        self.context.pending_classification = result
        self.transition_to(MachineState.WEIGHING, {'material': result.category.value})

        self._awaiting_weight = True
        try:
            await self.dispatcher.critical('get_weight')
        except TransientActuationError as e:
            self._awaiting_weight = False
            self.report_error('E102', {'action': e.action})
            if self.state == MachineState.WEIGHING:
                self._reject('weight_unavailable')

    async def on_weight_ready(self, event: WeightReady):
        """WEIGHING → PROCESSING | REJECTED"""
        pending = self.context.pending_classification
        if self.state != MachineState.WEIGHING or not self._awaiting_weight or pending is None:
            self.logger.warning("Weight %s dropped: none pending (%s)",
                                event.raw_value, self.state.value)
            return

        self.publisher.publish(WeightResult(reading=self.weigher.normalize(event.raw_value).to_dict()))

        epoch = self._epoch
        try:
            reading = await self.weigher.process(
                event.raw_value, self.dispatcher,
                still_pending=lambda: self._epoch == epoch and self.state == MachineState.WEIGHING)
        except CalibrationError as e:
            self._awaiting_weight = False
            self.report_error('E101', {'weight': e.reading.calibrated, 'attempts': e.attempts})
            if self.state == MachineState.WEIGHING:
                self._reject('calibration_failed')
            return
        except TransientActuationError as e:
            self._awaiting_weight = False
            self.report_error('E102', {'action': e.action})
            if self.state == MachineState.WEIGHING:
                self._reject('weight_unavailable')
            return

        if reading is None or self.state != MachineState.WEIGHING:
            # Re-read pending, or the cycle was aborted meanwhile
            return

        self._awaiting_weight = False
        if reading.calibrated <= self.min_valid_weight:
            self.logger.info("Weight %.1fg at or below minimum %.1fg",
                             reading.calibrated, self.min_valid_weight)
            self._reject('weight_too_low', {'weight': reading.calibrated})
            return

        self._begin_processing(pending, reading)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def _begin_processing(self, classification: ClassificationResult, reading: WeightReading):
        if self.context.in_flight:
            self.report_error('E405', {'reason': 'cycle already in flight'})
            return

        item = Item(category=classification.category, confidence=classification.confidence,
                    weight=reading.calibrated, raw_weight=reading.raw, label=classification.label)

        self.context.in_flight = True
        self.context.pending_classification = None
        self.transition_to(MachineState.PROCESSING, {'material': item.category.value,
                                                     'weight': item.weight})
        self.timers.start(TimerClass.CYCLE_WATCHDOG, self.timing.cycle_watchdog,
                          self._on_watchdog_expired)
        self._spawn(self._run_cycle(item))

    async def _run_cycle(self, item: Item):
        try:
            await self._actuate(item)
        except TransientActuationError as e:
            self.report_error('E001', {'action': e.action, 'material': item.category.value})
            await self._finish_cycle(item, accepted=False, reason='actuation_failed')
        else:
            await self._finish_cycle(item, accepted=True)

    async def _actuate(self, item: Item):
        """Gate → belt → diverter → compactor → belt return → diverter home"""
        d, t = self.dispatcher, self.timing

        if not self.context.gate_open:
            await d.critical('open_gate')
            self.context.gate_open = True
            await self._sleep(t.gate_operation)

        await d.belt('to_weight')
        await self._sleep(t.belt_to_weight)
        await d.belt('to_diverter')
        await self._sleep(t.belt_to_diverter)
        await d.belt('stop')
        await self._sleep(t.settle)

        position = self.diverter.position_for(item.category)
        if position is not None:
            await d.critical('move_diverter', position)
            await self._sleep(t.diverter_rotate)
        else:
            self.logger.info("No diverter route for %s", item.category.value)

        await d.compactor('start')
        await self._sleep(t.compactor_run)
        await d.compactor('stop')

        await d.belt('reverse')
        await self._sleep(t.belt_reverse)
        await d.belt('stop')

        if position is not None:
            await d.critical('move_diverter', self.diverter.home)
            await self._sleep(t.diverter_reset)

    async def _finish_cycle(self, item: Item, accepted: bool, reason: Optional[str] = None):
        self.context.in_flight = False
        self.timers.cancel(TimerClass.CYCLE_WATCHDOG)

        if not accepted:
            self.transition_to(MachineState.REJECTED, {'reason': reason})
            await self._return_item()
            await self._sleep(self.timing.feedback_delay)
            await self._after_feedback()
            return

        self.sessions.add_item(item)
        self.context.total_cycles += 1
        session = self.sessions.session
        summary = item.to_dict()
        if session is not None:
            summary.update(sessionId=session.session_id, userId=session.user_id,
                           itemCount=session.item_count, totalWeight=session.total_weight)
        summary['cycleNumber'] = self.context.total_cycles
        self.publisher.publish(CycleComplete(summary=summary))

        self.transition_to(MachineState.ACCEPTED, {'material': item.category.value,
                                                   'weight': item.weight})
        await self._sleep(self.timing.feedback_delay)
        await self._after_feedback()

    def _reject(self, reason: str, details: Optional[Dict] = None):
        """Reject the current item outside PROCESSING"""
        self._clear_requests()
        self.transition_to(MachineState.REJECTED, dict(details or {}, reason=reason))
        self._spawn(self._rejection_feedback())

    async def _rejection_feedback(self):
        await self._return_item()
        await self._sleep(self.timing.feedback_delay)
        await self._after_feedback()

    async def _return_item(self):
        """Run the belt backwards to hand the item back"""
        await self.dispatcher.belt('reverse', critical=False)
        await self._sleep(self.timing.reject_return)
        await self.dispatcher.belt('stop', critical=False)

    async def _after_feedback(self):
        if self.sessions.is_active:
            self.transition_to(MachineState.READY)
        elif self.sessions.has_pending_end:
            await self.sessions.finalize()
        else:
            self.transition_to(MachineState.IDLE)

    # ------------------------------------------------------------------
    # Forced recovery
    # ------------------------------------------------------------------

    async def _on_watchdog_expired(self):
        if not self.context.in_flight:
            return

        error = WatchdogTimeout(f"Processing exceeded {self.timing.cycle_watchdog}s")
        self.logger.critical("Cycle watchdog expired: %s", error)
        self.report_error(error.code, {'timeout': self.timing.cycle_watchdog,
                                       'state': self.state.value})

        await self._cancel_cycle()
        await self.dispatcher.safe_stop()
        self._reset_cycle()

        if self.sessions.is_active:
            self.transition_to(MachineState.READY, {'reason': 'watchdog'})
        elif self.sessions.has_pending_end:
            await self.sessions.finalize(reset_hardware=False)
        else:
            self.transition_to(MachineState.IDLE, {'reason': 'watchdog'})

    async def on_emergency_stop(self, event: Optional[EmergencyStop] = None):
        """Abort everything and end the session (any state → IDLE)"""
        self.logger.critical("EMERGENCY STOP in %s", self.state.value)
        await self._abort('emergency_stop')

    async def on_force_reset(self, event: Optional[ForceReset] = None):
        """Operator reset (any state → IDLE)"""
        self.logger.warning("Force reset in %s", self.state.value)
        await self._abort('force_reset')

    async def _abort(self, reason: str):
        self.timers.cancel_all(TimerClass.DEBOUNCE, TimerClass.CYCLE_WATCHDOG)
        await self._cancel_cycle()
        await self.dispatcher.safe_stop()
        self._reset_cycle()

        await self.sessions.abort(reason)
        if self.state != MachineState.IDLE:
            self.transition_to(MachineState.IDLE, {'reason': reason})

    def _reset_cycle(self):
        self.context.in_flight = False
        self.context.gate_open = False
        self.timers.cancel(TimerClass.CYCLE_WATCHDOG)
        self._clear_requests()
        self.weigher.reset()

    def _clear_requests(self):
        self._epoch += 1
        self.context.pending_classification = None
        self._awaiting_classification = False
        self._awaiting_weight = False

    # ------------------------------------------------------------------
    # Operator commands and device notices
    # ------------------------------------------------------------------

    async def on_set_manual_material(self, event: SetManualMaterial):
        """Operator override: treat as an accepted classification"""
        if (self.state not in (MachineState.READY, MachineState.DETECTING)
                or not self.sessions.is_active or self.context.in_flight):
            self.logger.warning("Manual material %s ignored in %s",
                                event.category.value, self.state.value)
            return

        self.timers.cancel(TimerClass.DEBOUNCE)
        self._awaiting_classification = False
        self.transition_to(MachineState.CLASSIFYING, {'manual': True})

        result = self.gate.manual(event.category)
        self.publisher.publish(AiResult(result=result.to_dict()))
        await self._apply_classification(result)

    async def on_capture_manually(self, event: Optional[CaptureManually] = None):
        """Take a photo now instead of waiting for the debounce"""
        if (self.state not in (MachineState.READY, MachineState.DETECTING)
                or not self.sessions.is_active or self.context.in_flight):
            self.logger.warning("Manual capture ignored in %s", self.state.value)
            return

        self.timers.cancel(TimerClass.DEBOUNCE)
        if self.state == MachineState.READY:
            self.transition_to(MachineState.DETECTING, {'manual': True})
        await self._request_capture()

    def on_get_status(self, event: Optional[GetStatus] = None):
        """Publish a status snapshot"""
        status = self.get_status()
        self.publisher.publish(StatusUpdate(state=self.state.value, details=status))

    def on_bin_full(self, event: BinFull):
        self.report_error('E401', {'bin': event.bin_name, 'code': event.code})

    def on_module_identified(self, event: ModuleIdentified):
        if not event.module_id:
            self.report_error('E504')
            return
        self.context.module_id = event.module_id
        self.dispatcher.bind_module(event.module_id)

    # ------------------------------------------------------------------
    # Task management
    # ------------------------------------------------------------------

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro, name='rvm-cycle')
        self._cycle_task = task
        task.add_done_callback(self._cycle_done)

    def _cycle_done(self, task: asyncio.Task):
        if self._cycle_task is task:
            self._cycle_task = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error("Cycle task failed: %r", exc, exc_info=exc)

    async def _cancel_cycle(self):
        task = self._cycle_task
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        self.logger.info("Cycle task cancelled")

    async def join(self):
        """Wait until no cycle task, debounce or timer task is outstanding"""
        while True:
            task = self._cycle_task
            if task is not None and not task.done():
                await asyncio.gather(task, return_exceptions=True)
            elif self.timers.is_active(TimerClass.DEBOUNCE):
                await asyncio.sleep(0)
            elif self.timers.get_stats()['running_tasks']:
                await self.timers.join()
            else:
                return

    async def shutdown(self, reason: str = 'shutdown'):
        """Stop the current cycle and end any open session"""
        self.timers.cancel_all(TimerClass.DEBOUNCE, TimerClass.CYCLE_WATCHDOG)
        await self._cancel_cycle()
        self._reset_cycle()
        await self.sessions.abort(reason, reset_hardware=True)
        self.logger.info("Cycle controller stopped (%d cycles)", self.context.total_cycles)

    def get_status(self) -> Dict:
        """Get controller status snapshot"""
        session = self.sessions.session
        return {
            **self.context.snapshot(),
            'session': {
                'sessionId': session.session_id,
                'userId': session.user_id,
                'isGuest': session.is_guest,
                'active': session.active,
                'itemCount': session.item_count,
                'totalWeight': session.total_weight,
            } if session is not None else None,
            'errors': self.error_count,
            'dispatcher': self.dispatcher.get_stats(),
            'timers': self.timers.get_stats(),
        }
