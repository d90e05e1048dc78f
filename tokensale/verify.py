"""
Post-distribution acceptance checks against a live Sale.

Every check reads chain state and compares it with what the configuration
says it should be. The access-control checks mutate the Sale and put each
field back afterwards.
"""
import logging
from collections import Counter, namedtuple
from functools import partial

from tokensale.chain import DISBURSEMENT, balance_of, send_as, token_of
from tokensale.errors import ConfigInvalid, MissingDisburser, TokenSaleError, is_evm_exception
from tokensale.flatten import flatten

log = logging.getLogger(__name__)

PASSED = 'passed'
FAILED = 'failed'
SKIPPED = 'skipped'

CheckResult = namedtuple('CheckResult', ['name', 'status', 'detail'])

WRONG_TOKEN_BALANCE = 'has an incorrect token balance.'
BAD_INITIALIZATION = 'was not initialized properly'
NON_OWNER_ACCESS_ERROR = 'A non-owner was able to'
OWNER_ACCESS_ERROR = 'An owner was unable to'
EARLY_PURCHASE_ERROR = ' was able to purchase tokens early'


class VerificationFailed(AssertionError):
    pass


class CheckSkipped(Exception):
    pass


def _same(actual, expected):
    if isinstance(actual, str) and isinstance(expected, str):
        return actual.lower() == expected.lower()
    return actual == expected


def _args(event):
    return event['args']


def disburser_for(events, beneficiary, tranche, used=()):
    """ The disburser recorded for (beneficiary, tranche.amount), first match in log order."""
    for i, event in enumerate(events):
        if i in used:
            continue
        args = _args(event)
        if (args['beneficiary'].lower() == beneficiary.lower()
                and str(args['amount']) == str(tranche.amount)):
            return i, args['disburser']
    raise MissingDisburser(beneficiary)


def resolve_disbursers(beneficiaries, events):
    """ Disburser address per tranche, in flattened tranche order.

    The log holds one record per tranche in flattened order, so record i
    belongs to tranche i. A record that does not agree with its tranche on
    (beneficiary, amount) is not trusted; the tranche is then looked up by
    (beneficiary, amount) among records not claimed yet.
    """
    pairs = [(b.address, t) for b in beneficiaries for t in b.tranches]
    claimed = set()
    resolved = [None] * len(pairs)

    for i, (address, tranche) in enumerate(pairs):
        if i < len(events):
            args = _args(events[i])
            if (args['beneficiary'].lower() == address.lower()
                    and str(args['amount']) == str(tranche.amount)):
                resolved[i] = args['disburser']
                claimed.add(i)

    for i, (address, tranche) in enumerate(pairs):
        if resolved[i] is None:
            log.warning("Tranche %d of %s is out of position in the log", i, address)
            index, disburser = disburser_for(events, address, tranche, used=claimed)
            claimed.add(index)
            resolved[i] = disburser

    return list(zip(pairs, resolved))


class SaleVerifier(object):
    NEW_PRICE = 2666
    NEW_START_BLOCK = 2666
    NEW_END_BLOCK = 10000
    BAD_END_BLOCK = 1
    NEW_WALLET = '0x0000000000000000000000000000000000000001'
    PURCHASE_AMOUNT = 420

    def __init__(self, sale, setup, events, james, miguel):
        self.sale = sale
        self.setup = setup
        self.events = events
        self.owner = setup.sale.owner
        self.james = james
        self.miguel = miguel
        self._token = None

    @classmethod
    def for_chain(cls, sale, setup, events):
        """ Picks the first two node accounts that are not the owner as james and miguel."""
        others = [a for a in sale.gateway.accounts() if a.lower() != setup.sale.owner.lower()]
        if len(others) < 2:
            raise ConfigInvalid('accounts', "need two unlocked non-owner accounts, "
                                            "found {}".format(len(others)))
        return cls(sale, setup, events, others[0], others[1])

    # -----------------------------------------------------------------------
    # Utilities
    # -----------------------------------------------------------------------

    @property
    def token(self):
        if self._token is None:
            self._token = token_of(self.sale)
        return self._token

    def balance_of(self, address):
        return balance_of(self.token, address)

    def assert_equal(self, actual, expected, message):
        if not _same(actual, expected):
            raise VerificationFailed("{} (expected {}, got {})".format(message, expected, actual))

    def expect_rejected(self, actor, method, *args, value=0):
        """ The call must fail with an EVM exception; any other error propagates."""
        try:
            send_as(actor, partial(self.sale.transact, value=value), method, *args)
        except TokenSaleError as e:
            if not is_evm_exception(e):
                raise
            log.debug("%s from %s rejected as expected: %s", method, actor, e)
            return
        raise VerificationFailed("{} from {} was not rejected".format(method, actor))

    def _restore(self, setter, getter, original):
        """ Puts a field back, sent by whoever owns the Sale now."""
        if _same(self.sale.call(getter), original):
            return
        current_owner = self.sale.call('owner')
        log.debug("Restoring %s to %s as %s", getter, original, current_owner)
        if setter == 'emergencyToggle':
            send_as(current_owner, self.sale.transact, setter)
        else:
            send_as(current_owner, self.sale.transact, setter, original)

    def _reject_non_owner(self, setter, getter, args, what):
        original = self.sale.call(getter)
        try:
            self.expect_rejected(self.james, setter, *args)
            self.assert_equal(self.sale.call(getter), original,
                              "{} change the {}".format(NON_OWNER_ACCESS_ERROR, what))
        finally:
            self._restore(setter, getter, original)

    def _owner_change(self, setter, getter, new_value, what):
        original = self.sale.call(getter)
        send_as(self.owner, self.sale.transact, setter, new_value)
        try:
            self.assert_equal(self.sale.call(getter), new_value,
                              "{} change the {}".format(OWNER_ACCESS_ERROR, what))
        finally:
            self._restore(setter, getter, original)

    # -----------------------------------------------------------------------
    # Initial token issuance
    # -----------------------------------------------------------------------

    def check_flattened_tranches(self):
        flat = flatten(self.setup.beneficiaries)
        lengths = set(len(s) for s in flat)
        if len(lengths) != 1:
            raise VerificationFailed("Flattened sequences differ in length: {}".format(lengths))
        source = Counter((b.address, t.amount, t.date, t.period)
                         for b in self.setup.beneficiaries for t in b.tranches)
        self.assert_equal(Counter(zip(*flat)), source, "Flattened tranches lost or gained entries")

    def check_pre_buyer_balances(self):
        for pre_buyer in self.setup.pre_buyers:
            self.assert_equal(self.balance_of(pre_buyer.address), pre_buyer.amount,
                              "A pre-buyer {}".format(WRONG_TOKEN_BALANCE))

    def check_disburser_balances(self):
        for (address, tranche), disburser in resolve_disbursers(self.setup.beneficiaries,
                                                                 self.events):
            disbursement = self.sale.at(DISBURSEMENT, disburser)
            self.assert_equal(self.balance_of(disbursement.address), tranche.amount,
                              "A disburser contract {}".format(WRONG_TOKEN_BALANCE))

    def check_sale_balance(self):
        self.assert_equal(self.balance_of(self.sale.address), self.setup.tokens_for_sale(),
                          "The sale contract {}".format(WRONG_TOKEN_BALANCE))

    # -----------------------------------------------------------------------
    # Instantiation
    # -----------------------------------------------------------------------

    def check_instantiation(self):
        conf = self.setup.sale
        self.assert_equal(self.sale.call('price'), conf.price,
                          "The price {}".format(BAD_INITIALIZATION))
        self.assert_equal(self.sale.call('owner'), conf.owner,
                          "The owner {}".format(BAD_INITIALIZATION))
        self.assert_equal(self.sale.call('wallet'), conf.wallet,
                          "The wallet {}".format(BAD_INITIALIZATION))
        self.assert_equal(self.sale.call('startBlock'), conf.start_block,
                          "The start block {}".format(BAD_INITIALIZATION))

    # -----------------------------------------------------------------------
    # Owner-only functions
    # -----------------------------------------------------------------------

    def check_non_owner_change_price(self):
        price = self.sale.call('price')
        self._reject_non_owner('changePrice', 'price', [price + 1], 'price')

    def check_non_owner_change_start_block(self):
        start_block = self.sale.call('startBlock')
        self._reject_non_owner('changeStartBlock', 'startBlock', [start_block + 1],
                               'start block')

    def check_non_owner_change_owner(self):
        self._reject_non_owner('changeOwner', 'owner', [self.james], 'owner')

    def check_non_owner_change_wallet(self):
        self._reject_non_owner('changeWallet', 'wallet', [self.james], 'wallet')

    def check_non_owner_emergency_toggle(self):
        self._reject_non_owner('emergencyToggle', 'emergencyFlag', [], 'emergencyToggle')

    def check_owner_change_owner(self):
        self._owner_change('changeOwner', 'owner', self.miguel, 'owner')

    def check_owner_change_price(self):
        self._owner_change('changePrice', 'price', self.NEW_PRICE, 'price')

    def check_owner_change_start_block(self):
        self._owner_change('changeStartBlock', 'startBlock', self.NEW_START_BLOCK, 'start block')

    def check_owner_change_end_block(self):
        self._owner_change('changeEndBlock', 'endBlock', self.NEW_END_BLOCK, 'end block')

    def check_end_block_floor(self):
        original = self.sale.call('endBlock')
        self.expect_rejected(self.owner, 'changeEndBlock', self.BAD_END_BLOCK)
        self.assert_equal(self.sale.call('endBlock'), original,
                          'endBlock less than startBlock should not be allowed')

    def check_owner_change_wallet(self):
        self._owner_change('changeWallet', 'wallet', self.NEW_WALLET, 'wallet address')

    def check_owner_emergency_toggle(self):
        original = self.sale.call('emergencyFlag')
        send_as(self.owner, self.sale.transact, 'emergencyToggle')
        try:
            self.assert_equal(self.sale.call('emergencyFlag'), not original,
                              "{} set the emergency toggle".format(OWNER_ACCESS_ERROR))
        finally:
            self._restore('emergencyToggle', 'emergencyFlag', original)

    # -----------------------------------------------------------------------
    # Pre-sale period
    # -----------------------------------------------------------------------

    def check_pre_sale_purchase(self):
        start_block = self.sale.call('startBlock')
        current = self.sale.gateway.block_number()
        if current >= start_block:
            raise CheckSkipped("block {} is past startBlock {}".format(current, start_block))
        starting_balance = self.balance_of(self.james)
        value = self.PURCHASE_AMOUNT * self.sale.call('price')
        self.expect_rejected(self.james, 'purchaseTokens', value=value)
        self.assert_equal(self.balance_of(self.james), starting_balance,
                          self.james + EARLY_PURCHASE_ERROR)

    CHECKS = [
        ('flattened tranches mirror the timelocks document', check_flattened_tranches),
        ('pre-buyers hold their allocations', check_pre_buyer_balances),
        ('disbursers hold their tranches', check_disburser_balances),
        ('sale holds the supply minus pre-allocations', check_sale_balance),
        ('sale is instantiated from configuration', check_instantiation),
        ('non-owner cannot change the price', check_non_owner_change_price),
        ('non-owner cannot change the startBlock', check_non_owner_change_start_block),
        ('non-owner cannot change the owner', check_non_owner_change_owner),
        ('non-owner cannot change the wallet', check_non_owner_change_wallet),
        ('non-owner cannot toggle the emergency flag', check_non_owner_emergency_toggle),
        ('owner can change the owner', check_owner_change_owner),
        ('owner can change the price', check_owner_change_price),
        ('owner can change the startBlock', check_owner_change_start_block),
        ('owner can change the endBlock', check_owner_change_end_block),
        ('endBlock cannot go below startBlock', check_end_block_floor),
        ('owner can change the wallet', check_owner_change_wallet),
        ('owner can toggle the emergency flag', check_owner_emergency_toggle),
        ('purchases are rejected before startBlock', check_pre_sale_purchase),
    ]

    def run(self):
        """ Runs every check in order. Transport failures propagate."""
        results = []
        for name, check in self.CHECKS:
            try:
                check(self)
            except CheckSkipped as e:
                results.append(CheckResult(name, SKIPPED, str(e)))
            except (VerificationFailed, MissingDisburser) as e:
                results.append(CheckResult(name, FAILED, str(e)))
            except TokenSaleError as e:
                if not is_evm_exception(e):
                    raise
                results.append(CheckResult(name, FAILED, str(e)))
            else:
                results.append(CheckResult(name, PASSED, ''))
            log.info("%-8s %s", results[-1].status, name)
        return results


def all_passed(results):
    return all(r.status != FAILED for r in results)
