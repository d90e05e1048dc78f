"""
Reshapes the timelocks document into the four parallel sequences taken by
Sale.distributeTimelockedTokens. Element i of each sequence describes the
same tranche; beneficiaries and their tranches keep document order.
"""
from collections import namedtuple

from tokensale.config import Beneficiary, TIMELOCKS_FILE, parse_timelocks
from tokensale.errors import LengthMismatch

FlatTranches = namedtuple('FlatTranches', ['addresses', 'amounts', 'dates', 'periods'])


def flatten(timelocks):
    """ Accepts the raw timelocks document or already parsed Beneficiary records.

    Malformed documents raise ConfigInvalid before any output is built.
    """
    if isinstance(timelocks, (tuple, list)) and all(isinstance(b, Beneficiary) for b in timelocks):
        beneficiaries = timelocks
    else:
        beneficiaries = parse_timelocks(timelocks, TIMELOCKS_FILE)

    flat = FlatTranches([], [], [], [])
    for beneficiary in beneficiaries:
        for tranche in beneficiary.tranches:
            flat.addresses.append(beneficiary.address)
            flat.amounts.append(tranche.amount)
            flat.dates.append(tranche.date)
            flat.periods.append(tranche.period)
    return flat


def check_parallel(what, *sequences):
    lengths = [len(s) for s in sequences]
    if len(set(lengths)) > 1:
        raise LengthMismatch(what, lengths)
    return lengths[0] if lengths else 0
