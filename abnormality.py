"""
Meter reading abnormality detection.

A reading is run through nineteen named checks. The set of failing checks,
together with the values that tripped them, forms an error signature; the
monitor only raises a new alert for a meter when that signature changes.
"""

import logging
import threading
from collections import OrderedDict
from datetime import datetime

from models import Meter

logger = logging.getLogger(__name__)

ZERO_EPSILON = 0.001
NEUTRAL_CURRENT_LIMIT = 15
LOW_PF_BAND = (-0.8, 0.8)
LOW_VOLTAGE_LIMIT = 180

PHASE_MISSING_CHECKS = ('R_PH Missing', 'Y_PH Missing', 'B_PH Missing')

# check name -> power data key it reports on
SIGNATURE_KEYS = {
    'Meter Power Fail (R - Phase)': 'powerFactor',
    'Meter Power Fail (Y - Phase)': 'pfYPh',
    'Meter Power Fail (B - Phase)': 'pfBPh',
    'R_PH Missing': 'vRPh',
    'Y_PH Missing': 'vYPh',
    'B_PH Missing': 'vBPh',
    'LT Fuse Blown (R - Phase)': 'cRPh',
    'LT Fuse Blown (Y - Phase)': 'cYPh',
    'LT Fuse Blown (B - Phase)': 'cBPh',
    'R_PH CT Reversed': 'cRPh',
    'Y_PH CT Reversed': 'cYPh',
    'B_PH CT Reversed': 'cBPh',
    'Unbalanced Load': 'neutral_current',
    'Low PF (R - Phase)': 'powerFactor',
    'Low PF (Y - Phase)': 'pfYPh',
    'Low PF (B - Phase)': 'pfBPh',
    'HT Fuse Blown (R - Phase)': 'vRPh',
    'HT Fuse Blown (Y - Phase)': 'vYPh',
    'HT Fuse Blown (B - Phase)': 'vBPh',
}

ZERO_VALUE_CHECKS = (
    'Meter Power Fail (R - Phase)', 'Meter Power Fail (Y - Phase)', 'Meter Power Fail (B - Phase)',
    'R_PH Missing', 'Y_PH Missing', 'B_PH Missing',
    'LT Fuse Blown (R - Phase)', 'LT Fuse Blown (Y - Phase)', 'LT Fuse Blown (B - Phase)',
)


def _number(value):
    if value is None or value == '':
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def is_zero(value):
    # Missing values count as zero
    number = _number(value)
    return number is None or abs(number) < ZERO_EPSILON


def is_negative(value):
    number = _number(value)
    return number is not None and number < 0


def is_load_imbalance(neutral_current):
    number = _number(neutral_current)
    return number is not None and number > NEUTRAL_CURRENT_LIMIT


def is_low_power_factor(power_factor):
    number = _number(power_factor)
    return number is not None and LOW_PF_BAND[0] <= number <= LOW_PF_BAND[1]


def is_low_voltage(voltage):
    number = _number(voltage)
    return number is not None and number < LOW_VOLTAGE_LIMIT


def analyze_meter_reading(reading):
    """Return an ordered {check name: detected} map for one reading."""
    r_pf = reading.rph_power_factor
    return OrderedDict([
        ('Meter Power Fail (R - Phase)', is_zero(r_pf)),
        ('Meter Power Fail (Y - Phase)', is_zero(reading.yph_power_factor)),
        ('Meter Power Fail (B - Phase)', is_zero(reading.bph_power_factor)),

        ('R_PH Missing', is_zero(reading.voltage_r)),
        ('Y_PH Missing', is_zero(reading.voltage_y)),
        ('B_PH Missing', is_zero(reading.voltage_b)),

        ('LT Fuse Blown (R - Phase)', is_zero(reading.current_r)),
        ('LT Fuse Blown (Y - Phase)', is_zero(reading.current_y)),
        ('LT Fuse Blown (B - Phase)', is_zero(reading.current_b)),

        ('R_PH CT Reversed', is_negative(reading.current_r)),
        ('Y_PH CT Reversed', is_negative(reading.current_y)),
        ('B_PH CT Reversed', is_negative(reading.current_b)),

        ('Unbalanced Load', is_load_imbalance(reading.neutral_current)),

        ('Low PF (R - Phase)', is_low_power_factor(r_pf)),
        ('Low PF (Y - Phase)', is_low_power_factor(reading.yph_power_factor)),
        ('Low PF (B - Phase)', is_low_power_factor(reading.bph_power_factor)),

        ('HT Fuse Blown (R - Phase)', is_low_voltage(reading.voltage_r)),
        ('HT Fuse Blown (Y - Phase)', is_low_voltage(reading.voltage_y)),
        ('HT Fuse Blown (B - Phase)', is_low_voltage(reading.voltage_b)),
    ])


def has_abnormalities(abnormalities):
    return any(abnormalities.values())


def get_abnormality_summary(abnormalities):
    return [name for name, detected in abnormalities.items() if detected]


def format_power_data(reading):
    def value(v):
        return v if v not in (None, '') else '0.000'

    reading_date = reading.reading_date or datetime.utcnow()
    return {
        'powerFactor': value(reading.rph_power_factor),
        'pfYPh': value(reading.yph_power_factor),
        'pfBPh': value(reading.bph_power_factor),
        'vRPh': value(reading.voltage_r),
        'vYPh': value(reading.voltage_y),
        'vBPh': value(reading.voltage_b),
        'cRPh': value(reading.current_r),
        'cYPh': value(reading.current_y),
        'cBPh': value(reading.current_b),
        'neutral_current': value(reading.neutral_current),
        'frequency': value(reading.frequency),
        'tamper_datetime': reading_date.isoformat(),
    }


def generate_error_signature(abnormalities, power_data):
    """Detected checks and their values, sorted by check name."""
    parts = []
    for name in sorted(abnormalities):
        if abnormalities[name]:
            key = SIGNATURE_KEYS.get(name, name)
            parts.append(f"{name}:{power_data.get(key, '0.000')};")
    return ''.join(parts)


def classify_alert_kind(abnormalities):
    if all(abnormalities.get(name) for name in PHASE_MISSING_CHECKS):
        return 'POWER_FAILURE'
    if any(abnormalities.get(name) for name in ZERO_VALUE_CHECKS):
        return 'ZERO_VALUE'
    return 'METER_ABNORMALITY'


def build_alert_context(meter, reading, abnormalities):
    summary = get_abnormality_summary(abnormalities)
    context = {
        'meter_id': meter.id,
        'meter_number': meter.meter_number,
        'meter_serial': meter.serial_number,
        'dtr_name': meter.dtr_label,
        'feeder_name': meter.feeder_label,
        'abnormality_type': summary,
        'zero_values': [name for name in summary if name in ZERO_VALUE_CHECKS],
    }
    context.update(format_power_data(reading))
    return context


class MeterAbnormalityMonitor:
    """Checks the latest reading of every active meter and raises alerts."""

    def __init__(self, dispatcher):
        self.dispatcher = dispatcher
        self._signatures = {}
        self._lock = threading.Lock()

    def last_signature(self, serial_number):
        with self._lock:
            return self._signatures.get(serial_number)

    def evaluate(self, meter, reading):
        """Returns the DispatchResult when an alert was raised, else None."""
        abnormalities = analyze_meter_reading(reading)

        if not has_abnormalities(abnormalities):
            with self._lock:
                cleared = self._signatures.pop(meter.serial_number, None)
            if cleared is not None:
                logger.info("Cleared error state for meter %s", meter.serial_number)
            return None

        signature = generate_error_signature(abnormalities, format_power_data(reading))
        with self._lock:
            if self._signatures.get(meter.serial_number) == signature:
                logger.debug("Meter %s: abnormalities unchanged, skipping", meter.serial_number)
                return None
            self._signatures[meter.serial_number] = signature

        kind = classify_alert_kind(abnormalities)
        logger.warning("Meter %s: %s", meter.serial_number, ', '.join(get_abnormality_summary(abnormalities)))
        try:
            return self.dispatcher.raise_alert(kind, build_alert_context(meter, reading, abnormalities))
        except Exception:
            # Let the next check retry this meter
            with self._lock:
                if self._signatures.get(meter.serial_number) == signature:
                    del self._signatures[meter.serial_number]
            raise

    def check_meters(self):
        meters = Meter.query.filter(Meter.status == 'ACTIVE', Meter.is_in_use.is_(True)).all()
        abnormal = 0
        alerts = 0

        for meter in meters:
            reading = meter.readings.first()
            if reading is None:
                logger.debug("No readings for meter %s", meter.meter_number)
                continue
            if has_abnormalities(analyze_meter_reading(reading)):
                abnormal += 1
            try:
                if self.evaluate(meter, reading) is not None:
                    alerts += 1
            except Exception as e:
                logger.error("Error processing meter %s: %s", meter.meter_number, e)

        summary = {
            'totalMeters': len(meters),
            'metersWithAbnormalities': abnormal,
            'alertsRaised': alerts,
            'timestamp': datetime.utcnow().isoformat(),
        }
        logger.info("Meter abnormality check: %s", summary)
        return summary
