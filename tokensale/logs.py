"""
Persisted distribution log: the (beneficiary, amount, disburser) records
emitted by Sale.distributeTimelockedTokens, in emission order.
"""
import json
import logging
import os
import tempfile

from tokensale.config import read_json
from tokensale.errors import ConfigInvalid

log = logging.getLogger(__name__)

DEFAULT_LOG_PATH = os.path.join('logs_distribution', 'logs_distribution.json')

RECORD_ARGS = ('beneficiary', 'amount', 'disburser')


def write_json(obj, path):
    """ Pretty-printed, key-sorted JSON written via a temp file and rename."""
    text = json.dumps(obj, indent=2, sort_keys=True, ensure_ascii=False)
    directory = os.path.dirname(path) or '.'
    os.makedirs(directory, exist_ok=True)
    with tempfile.NamedTemporaryFile('w', encoding='utf-8', dir=directory,
                                     delete=False) as tf:
        tf.write(text)
        tf.flush()
        os.fsync(tf.fileno())
        tmp_name = tf.name
    os.replace(tmp_name, path)


def is_distribution_record(event):
    args = event.get('args') if isinstance(event, dict) else None
    return isinstance(args, dict) and all(k in args for k in RECORD_ARGS)


def persist(events, path=DEFAULT_LOG_PATH):
    events = list(events)
    write_json(events, path)
    log.info("Wrote %d distribution records to %s", len(events), path)
    return path


def load(path=DEFAULT_LOG_PATH):
    events = read_json(path)
    if not isinstance(events, list):
        raise ConfigInvalid(path, "expected a JSON array of event records")
    for i, event in enumerate(events):
        if not is_distribution_record(event):
            raise ConfigInvalid('{}[{}]'.format(path, i),
                                "record lacks args {}".format(', '.join(RECORD_ARGS)))
    return events
