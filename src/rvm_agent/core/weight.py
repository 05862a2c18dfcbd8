"""
Weight Normalizer: Raw Load Cell Reading → Calibrated Weight

Applies the scale coefficient and drives the bounded recalibration
loop when the scale reports a non-positive weight.
"""

import asyncio
import logging
from typing import Callable, Optional

from .errors import CalibrationError
from .models import WeightReading


class WeightNormalizer:
    """
    Calibrated weight with bounded recalibration

    A non-positive reading triggers calibrate → re-read, at most
    `max_attempts` times in a row. The re-read comes back as a new
    weight event, so `process` returns None while a retry is pending.
    """

    def __init__(self, coefficient: float = 988.0, max_attempts: int = 2,
                 backoff: float = 0.5, reread_delay: float = 1.0, sleep=asyncio.sleep):
        """
        Initialize Weight Normalizer

        Args:
            coefficient: Scale coefficient (raw * coefficient / 1000)
            max_attempts: Recalibrations allowed before giving up
            backoff: Delay before recalibrating (seconds)
            reread_delay: Delay between calibration and re-read (seconds)
            sleep: Awaitable sleep function
        """
        self.logger = logging.getLogger(__name__)
        self.coefficient = coefficient
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.reread_delay = reread_delay
        self._sleep = sleep
        self.attempts = 0

    def normalize(self, raw: float) -> WeightReading:
        """Convert a raw reading to grams (rounded to 0.1)"""
        raw = float(raw)
        calibrated = round(raw * self.coefficient / 1000, 1)
        return WeightReading(raw=raw, coefficient=self.coefficient, calibrated=calibrated)

    async def process(self, raw: float, dispatcher,
                      still_pending: Optional[Callable[[], bool]] = None) -> Optional[WeightReading]:
        """
        Process a raw weight event

        Args:
            raw: Raw reading from the device channel
            dispatcher: CommandDispatcher used for calibrate/re-read
            still_pending: Checked after each delay; False drops the retry

        Returns:
            WeightReading when positive, None while a re-read is pending

        Raises:
            CalibrationError: Still non-positive after max_attempts
            TransientActuationError: Calibration command failed
        """
        reading = self.normalize(raw)

        if reading.calibrated > 0:
            if self.attempts:
                self.logger.info("Weight recovered after %d calibration(s): %.1fg",
                                 self.attempts, reading.calibrated)
            self.attempts = 0
            return reading

        if self.attempts >= self.max_attempts:
            attempts = self.attempts
            self.attempts = 0
            self.logger.error("Weight %.1fg after %d calibration attempts, giving up",
                              reading.calibrated, attempts)
            raise CalibrationError(reading, attempts)

        self.attempts += 1
        self.logger.warning("Non-positive weight (%.1fg), calibrating (attempt %d/%d)",
                            reading.calibrated, self.attempts, self.max_attempts)

        await self._sleep(self.backoff)
        if not self._pending(still_pending):
            return None
        await dispatcher.critical('calibrate_weight')
        await self._sleep(self.reread_delay)
        if not self._pending(still_pending):
            return None
        await dispatcher.critical('get_weight')
        return None

    def _pending(self, still_pending) -> bool:
        if still_pending is None or still_pending():
            return True
        self.logger.info("Weight request withdrawn, recalibration dropped")
        return False

    def reset(self):
        """Forget pending calibration attempts"""
        self.attempts = 0
