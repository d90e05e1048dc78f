"""
Batched distribution of the initial token supply.

Each batch is one Sale transaction; the next batch is only submitted once
the previous receipt is in, so the deployer nonce is never raced and the
collected events follow input order.
"""
import logging

from tokensale.config import env_int
from tokensale.errors import ConfigInvalid
from tokensale.flatten import check_parallel
from tokensale.logs import is_distribution_record

log = logging.getLogger(__name__)

# Per-call gas budget: a timelocked entry also deploys a Disbursement, ~5x a plain transfer.
PRE_BUYER_BATCH_SIZE = 20
TIMELOCK_BATCH_SIZE = 4


def configured_batch_sizes():
    return (env_int('TOKENSALE_PRE_BUYER_BATCH', PRE_BUYER_BATCH_SIZE),
            env_int('TOKENSALE_TIMELOCK_BATCH', TIMELOCK_BATCH_SIZE))


def check_batch_size(size, what="batch size"):
    if size < 1:
        raise ConfigInvalid(what, "must be positive, got {}".format(size))
    return size


def chunks(length, size):
    """ (start, end) offsets of consecutive slices of at most `size` items."""
    check_batch_size(size)
    return [(start, min(start + size, length)) for start in range(0, length, size)]


def distribute_pre_buyers(sale, addresses, amounts, sender=None,
                          batch_size=PRE_BUYER_BATCH_SIZE):
    n = check_parallel('pre-buyers and pre-buyer token allocations', addresses, amounts)
    for start, end in chunks(n, batch_size):
        sale.transact('distributePreBuyersRewards',
                      list(addresses[start:end]), list(amounts[start:end]),
                      sender=sender)
        log.info("Distributed tokens to a batch of %d pre-buyers (%d/%d)",
                 end - start, end, n)


def distribute_timelocked(sale, addresses, amounts, dates, periods, sender=None,
                          batch_size=TIMELOCK_BATCH_SIZE):
    """ Returns the distribution records of all batches, in call order."""
    n = check_parallel('timelocked beneficiaries, allocations, dates and periods',
                       addresses, amounts, dates, periods)
    logs = []
    for start, end in chunks(n, batch_size):
        receipt = sale.transact('distributeTimelockedTokens',
                                list(addresses[start:end]), list(amounts[start:end]),
                                list(dates[start:end]), list(periods[start:end]),
                                sender=sender)
        records = [e for e in receipt.events if is_distribution_record(e)]
        _check_batch(records, addresses[start:end], amounts[start:end], start)
        logs.extend(records)
        log.info("Distributed a batch of %d timelocked token chunks (%d/%d)",
                 end - start, end, n)
    return logs


def _check_batch(records, addresses, amounts, offset):
    if len(records) != len(addresses):
        log.warning("Batch at tranche %d emitted %d distribution records for %d tranches",
                    offset, len(records), len(addresses))
        return
    for i, (record, address, amount) in enumerate(zip(records, addresses, amounts)):
        args = record['args']
        if (args['beneficiary'].lower() != address.lower()
                or str(args['amount']) != str(amount)):
            log.warning("Tranche %d: record (%s, %s) does not match input (%s, %s)",
                        offset + i, args['beneficiary'], args['amount'], address, amount)


def distribute(sale, setup, flat, sender=None, pre_batch_size=PRE_BUYER_BATCH_SIZE,
               timelock_batch_size=TIMELOCK_BATCH_SIZE):
    """ Pre-buyers first, then timelocked tranches. Returns the timelocked records."""
    check_batch_size(pre_batch_size, "pre-buyer batch size")
    check_batch_size(timelock_batch_size, "timelocked batch size")
    distribute_pre_buyers(sale,
                          [p.address for p in setup.pre_buyers],
                          [p.amount for p in setup.pre_buyers],
                          sender=sender, batch_size=pre_batch_size)
    return distribute_timelocked(sale, flat.addresses, flat.amounts, flat.dates, flat.periods,
                                 sender=sender, batch_size=timelock_batch_size)
