"""Parser for the line-oriented metrics exposition format.

        metric_name{label="value",...} value [timestamp]

Comment lines (`# HELP`, `# TYPE`, ...) and blank lines are skipped, and a
line that does not match the grammar is dropped without failing the whole
payload. Only an unreadable payload raises.
"""

import logging
import math
import re
from typing import Dict, Iterator, Optional, Union

from relay_metrics.lib.errors import ExpositionParseError
from relay_metrics.models.samples import RawSample

logger = logging.getLogger(__name__)

_NAME = r'[a-zA-Z_:][a-zA-Z0-9_:]*'
_LABEL_PAIR = r'\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*=\s*"((?:[^"\\]|\\.)*)"\s*'

LINE_PATTERN = re.compile(
    rf'^\s*(?P<name>{_NAME})\s*(?:\{{(?P<labels>(?:{_LABEL_PAIR}(?:,|(?=\}})))*\s*)\}})?\s+(?P<value>\S+)(?:\s+(?P<timestamp>-?\d+))?\s*$'
)
LABEL_PATTERN = re.compile(_LABEL_PAIR)
LABELS_PATTERN = re.compile(rf'^(?:{_LABEL_PAIR}(?:,{_LABEL_PAIR})*,?)?\s*$')

NUMBER_PATTERN = re.compile(r'^[+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?$')
_SPECIAL_VALUES = {'+inf': math.inf, 'inf': math.inf, '-inf': -math.inf, 'nan': math.nan}
_ESCAPES = {'\\\\': '\\', '\\"': '"', '\\n': '\n'}


def _unescape(value: str) -> str:
    return re.sub(r'\\[\\"n]', lambda m: _ESCAPES[m.group(0)], value)


def _escape(value: str) -> str:
    return value.replace('\\', '\\\\').replace('"', '\\"').replace('\n', '\\n')


def parse_value(token: str) -> Optional[float]:
    """Parse a sample value; None when the token is not a number."""
    special = _SPECIAL_VALUES.get(token.lower())
    if special is not None:
        return special
    if not NUMBER_PATTERN.match(token):
        return None
    return float(token)


def parse_labels(text: str) -> Optional[Dict[str, str]]:
    """Parse the inside of `{...}`; None when it is malformed. Duplicate keys: last wins."""
    if not LABELS_PATTERN.match(text):
        return None
    return {key: _unescape(value) for key, value in LABEL_PATTERN.findall(text)}


def parse_line(line: str) -> Optional[RawSample]:
    """Parse one exposition line, returning None for comments, blanks and malformed lines."""
    stripped = line.strip()
    if not stripped or stripped.startswith('#'):
        return None

    match = LINE_PATTERN.match(stripped)
    if match is None:
        return None

    value = parse_value(match.group('value'))
    if value is None:
        return None

    labels: Dict[str, str] = {}
    if match.group('labels') is not None:
        labels = parse_labels(match.group('labels'))
        if labels is None:
            return None

    timestamp = match.group('timestamp')
    return RawSample(
        name=match.group('name'),
        value=value,
        labels=labels,
        timestamp=int(timestamp) if timestamp is not None else None,
    )


def parse_exposition(payload: Union[str, bytes]) -> Iterator[RawSample]:
    """Yield samples from an exposition payload in input order.

    Args:
        payload: Response body, as text or raw UTF-8 bytes

    Raises:
        ExpositionParseError: If the payload cannot be decoded
    """
    if isinstance(payload, bytes):
        try:
            payload = payload.decode('utf-8')
        except UnicodeDecodeError as e:
            raise ExpositionParseError(f'Exposition payload is not valid UTF-8: {e}') from e
    elif not isinstance(payload, str):
        raise ExpositionParseError(f'Unsupported exposition payload type: {type(payload).__name__}')

    for line_number, line in enumerate(payload.splitlines(), start=1):
        sample = parse_line(line)
        if sample is None:
            stripped = line.strip()
            if stripped and not stripped.startswith('#'):
                logger.debug(f'Skipping malformed exposition line {line_number}: {stripped[:200]!r}')
            continue
        yield sample


def format_value(value: float) -> str:
    if math.isnan(value):
        return 'NaN'
    if math.isinf(value):
        return '+Inf' if value > 0 else '-Inf'
    if value.is_integer() and abs(value) < 1e16:
        return str(int(value))
    return repr(value)


def format_sample(sample: RawSample) -> str:
    """Serialize a sample back to one exposition line."""
    line = sample.name
    if sample.labels:
        pairs = ','.join(f'{key}="{_escape(value)}"' for key, value in sample.labels.items())
        line += '{' + pairs + '}'
    line += ' ' + format_value(sample.value)
    if sample.timestamp is not None:
        line += f' {sample.timestamp}'
    return line
