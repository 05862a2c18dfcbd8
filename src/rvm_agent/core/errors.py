"""
Error taxonomy and error-code catalog

Every agent error carries a catalog code so it can be logged and
reported on the errors topic with a severity and category.
"""

import logging
from collections import namedtuple
from typing import Optional

ErrorCode = namedtuple('ErrorCode', ['severity', 'category', 'message'])

ERROR_CODES = {
    # Hardware
    'E001': ErrorCode('CRITICAL', 'HARDWARE', 'Actuator command failed'),
    'E002': ErrorCode('CRITICAL', 'HARDWARE', 'Gate malfunction'),
    'E003': ErrorCode('ERROR', 'HARDWARE', 'Diverter timeout'),
    'E004': ErrorCode('CRITICAL', 'HARDWARE', 'Compactor motor failure'),

    # Sensors
    'E101': ErrorCode('WARNING', 'SENSOR', 'Weight sensor needs calibration'),
    'E102': ErrorCode('ERROR', 'SENSOR', 'Weight sensor failure'),
    'E103': ErrorCode('ERROR', 'SENSOR', 'Camera connection lost'),

    # Detection
    'E201': ErrorCode('WARNING', 'DETECTION', 'Low confidence detection'),
    'E202': ErrorCode('ERROR', 'DETECTION', 'Classification timeout'),

    # Communication
    'E301': ErrorCode('CRITICAL', 'COMMUNICATION', 'MQTT connection lost'),
    'E302': ErrorCode('CRITICAL', 'COMMUNICATION', 'Device channel disconnected'),
    'E303': ErrorCode('ERROR', 'COMMUNICATION', 'Backend API timeout'),
    'E305': ErrorCode('WARNING', 'COMMUNICATION', 'Malformed message'),

    # Operational
    'E401': ErrorCode('CRITICAL', 'OPERATIONAL', 'Bin full'),
    'E402': ErrorCode('ERROR', 'OPERATIONAL', 'Cycle timeout'),
    'E403': ErrorCode('WARNING', 'OPERATIONAL', 'Session timeout'),
    'E405': ErrorCode('WARNING', 'OPERATIONAL', 'Conflicting request rejected'),

    # System
    'E501': ErrorCode('CRITICAL', 'SYSTEM', 'Watchdog timeout'),
    'E504': ErrorCode('ERROR', 'SYSTEM', 'Module ID not available'),
}

SEVERITY_LEVELS = {
    'INFO': logging.INFO,
    'WARNING': logging.WARNING,
    'ERROR': logging.ERROR,
    'CRITICAL': logging.CRITICAL,
}


def describe(code: str) -> ErrorCode:
    """Look up a catalog entry; unknown codes map to a generic ERROR"""
    return ERROR_CODES.get(code, ErrorCode('ERROR', 'SYSTEM', 'Unknown error'))


class RvmError(Exception):
    """Base class for agent errors"""
    code = 'E501'

    def __init__(self, message: str = '', code: Optional[str] = None):
        super().__init__(message or describe(code or self.code).message)
        if code:
            self.code = code

    @property
    def severity(self) -> str:
        return describe(self.code).severity


class TransientActuationError(RvmError):
    """Critical actuator command still failing after its one retry"""
    code = 'E001'

    def __init__(self, action: str, cause: Optional[BaseException] = None):
        self.action = action
        self.cause = cause
        detail = f": {cause}" if cause is not None else ''
        super().__init__(f"Actuation '{action}' failed after retry{detail}")


class CalibrationError(RvmError):
    """Weight stayed non-positive after the recalibration attempts"""
    code = 'E101'

    def __init__(self, reading=None, attempts: int = 0):
        self.reading = reading
        self.attempts = attempts
        weight = reading.calibrated if reading is not None else None
        super().__init__(f"Weight {weight} still non-positive after {attempts} calibration attempts")


class WatchdogTimeout(RvmError):
    """PROCESSING exceeded its time bound"""
    code = 'E402'


class ProtocolError(RvmError):
    """Malformed or unrecognized inbound message"""
    code = 'E305'


class ConcurrencyViolation(RvmError):
    """Event would start a second concurrent cycle or session"""
    code = 'E405'
