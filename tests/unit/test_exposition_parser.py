"""Unit tests for the exposition parser."""

import math

import pytest

from relay_metrics.lib.errors import ExpositionParseError
from relay_metrics.models.samples import RawSample
from relay_metrics.services.exposition_parser import (
  format_sample,
  format_value,
  parse_exposition,
  parse_line,
)


class TestParseLine:
  """Grammar: name{label="value",...} value [timestamp]."""

  def test_labelled_counter(self):
    sample = parse_line('soketi_new_connections_total{port="6001"} 100')

    assert sample == RawSample(
      name='soketi_new_connections_total', value=100.0, labels={'port': '6001'}
    )

  def test_bare_gauge_with_timestamp(self):
    sample = parse_line('soketi_connected 42 1760000000000')

    assert sample.name == 'soketi_connected'
    assert sample.value == 42.0
    assert sample.labels == {}
    assert sample.timestamp == 1760000000000

  def test_multiple_labels_and_escapes(self):
    sample = parse_line('http_requests{method="GET",path="/a\\"b\\\\c",note="x\\ny"} 3.5')

    assert sample.labels == {'method': 'GET', 'path': '/a"b\\c', 'note': 'x\ny'}
    assert sample.value == 3.5

  def test_duplicate_label_last_wins(self):
    sample = parse_line('m{port="1",port="2"} 1')

    assert sample.labels == {'port': '2'}

  def test_special_values(self):
    assert parse_line('m +Inf').value == math.inf
    assert parse_line('m -Inf').value == -math.inf
    assert math.isnan(parse_line('m NaN').value)

  def test_scientific_notation(self):
    assert parse_line('m 1.5e3').value == 1500.0
    assert parse_line('m -.5').value == -0.5
    assert parse_line('m 2.E-1').value == 0.2

  def test_braces_and_commas_inside_label_values(self):
    sample = parse_line('http_requests{path="/a}b{c",query="x=1,y=2"} 3')

    assert sample.labels == {'path': '/a}b{c', 'query': 'x=1,y=2'}
    assert sample.value == 3.0

  @pytest.mark.parametrize('line', [
    '',
    '   ',
    '# HELP soketi_connected Connected sockets',
    '# TYPE soketi_connected gauge',
  ])
  def test_comments_and_blanks_are_skipped(self, line):
    assert parse_line(line) is None

  @pytest.mark.parametrize('line', [
    'soketi_connected',
    'soketi_connected not-a-number',
    '9starts_with_digit 1',
    'm{port=6001} 1',
    'm{port="6001" 1',
    'm{port="6001"}',
    'soketi_connected 1_000',
    'soketi_connected infinity',
    'soketi_connected 0x10',
    'm{a="1" b="2"} 1',
  ])
  def test_malformed_lines_are_dropped(self, line):
    assert parse_line(line) is None


class TestParseExposition:
  """Whole-payload parsing."""

  def test_yields_samples_in_input_order(self, sample_exposition):
    samples = list(parse_exposition(sample_exposition))

    names = [s.name for s in samples]
    assert names[0] == 'soketi_connected'
    assert names[-1] == 'soketi_process_start_time_seconds'
    assert len(samples) == 10

  def test_malformed_line_does_not_fail_payload(self):
    payload = 'good 1\nbad line here\nalso_good{a="b"} 2\n'

    samples = list(parse_exposition(payload))

    assert [s.name for s in samples] == ['good', 'also_good']

  def test_accepts_utf8_bytes(self):
    samples = list(parse_exposition('m{city="Zürich"} 1\n'.encode('utf-8')))

    assert samples[0].labels == {'city': 'Zürich'}

  def test_empty_payload_yields_nothing(self):
    assert list(parse_exposition('')) == []

  def test_invalid_utf8_raises(self):
    with pytest.raises(ExpositionParseError):
      list(parse_exposition(b'm 1\n\xff\xfe'))

  def test_unsupported_type_raises(self):
    with pytest.raises(ExpositionParseError):
      list(parse_exposition(12345))


class TestFormat:
  """Serializing samples back to exposition lines."""

  def test_format_value(self):
    assert format_value(42.0) == '42'
    assert format_value(0.25) == '0.25'
    assert format_value(math.inf) == '+Inf'
    assert format_value(-math.inf) == '-Inf'
    assert format_value(math.nan) == 'NaN'

  def test_format_escapes_label_values(self):
    sample = RawSample(name='m', value=1.0, labels={'path': 'a"b\\c\nd'})

    assert format_sample(sample) == 'm{path="a\\"b\\\\c\\nd"} 1'

  @pytest.mark.parametrize('line', [
    'soketi_connected{port="6001"} 42',
    'soketi_socket_received_bytes{port="6001",app="demo"} 2048 1760000000000',
    'm{path="a\\"b"} 0.125',
    'bare_metric 7',
    'm{path="/a}b",sep=",",open="{"} 1',
  ])
  def test_parse_format_parse_is_lossless(self, line):
    first = parse_line(line)

    assert parse_line(format_sample(first)) == first

  def test_formatted_sample_with_brace_in_value_parses_back(self):
    sample = RawSample(name='m', value=1.0, labels={'path': '/a}b', 'set': '{x,y}'})

    assert parse_line(format_sample(sample)) == sample
