import dataclasses
import unittest

from fake_chain import (BENEFICIARY, JAMES, MIGUEL, OWNER, PRE_BUYER, WALLET, FakeChain,
                        scenario_documents, token_balance)
from tokensale import distribute, verify
from tokensale.chain import SALE, ContractHandle
from tokensale.config import Tranche, build_setup
from tokensale.deploy import deploy_sale
from tokensale.errors import ChainUnreachable, ConfigInvalid, MissingDisburser
from tokensale.flatten import flatten


def record(beneficiary, amount, disburser):
    return {'event': 'TransferredTimelockedTokens',
            'args': {'beneficiary': beneficiary, 'amount': str(amount), 'disburser': disburser}}


class SaleScenarioTest(unittest.TestCase):

    def setUp(self):
        self.chain = FakeChain()
        self.setup = build_setup(*scenario_documents())
        flat = flatten(self.setup.beneficiaries)
        addr = deploy_sale(self.chain, self.setup.sale, self.setup.token,
                           self.setup.pre_buyer_count, len(flat.addresses), sender=OWNER)
        self.sale = ContractHandle(self.chain, SALE, addr)
        self.events = distribute.distribute(self.sale, self.setup, flat, sender=OWNER)
        self.verifier = verify.SaleVerifier.for_chain(self.sale, self.setup, self.events)

    def balance(self, holder):
        return token_balance(self.chain, self.sale.address, holder)

    def statuses(self, results):
        return dict((r.name, r.status) for r in results)

    def test_distribution_state(self):
        assert self.balance(self.sale.address) == 1000000 - 100 - 75
        assert self.balance(PRE_BUYER) == 100
        assert [e['args']['amount'] for e in self.events] == ['50', '25']
        d0, d1 = [e['args']['disburser'] for e in self.events]
        assert d0 != d1
        assert self.balance(d0) == 50
        assert self.balance(d1) == 25

    def test_identities(self):
        assert self.verifier.owner.lower() == OWNER
        assert self.verifier.james == JAMES
        assert self.verifier.miguel == MIGUEL

    def test_all_checks_pass(self):
        results = self.verifier.run()

        assert len(results) == len(verify.SaleVerifier.CHECKS)
        assert all(r.status == verify.PASSED for r in results), results
        assert verify.all_passed(results)

    def test_run_restores_sale_fields(self):
        self.verifier.run()

        sale = self.chain.at(self.sale.address)
        assert sale.owner().lower() == OWNER
        assert sale.wallet().lower() == WALLET
        assert sale.price() == 1000
        assert sale.startBlock() == 1000
        assert sale.endBlock() == 2000
        assert sale.emergencyFlag() is False

    def test_run_issues_expected_probes(self):
        self.verifier.run()

        change_price = self.chain.calls('changePrice')
        assert [(c['sender'], c['args'], c['failed']) for c in change_price][:1] == \
            [(JAMES, [1001], False)]
        assert [c['args'] for c in change_price[1:]] == [[2666], [1000]]

        change_owner = self.chain.calls('changeOwner')
        assert [c['sender'].lower() for c in change_owner] == [JAMES, OWNER, MIGUEL]

        assert [c['args'] for c in self.chain.calls('changeEndBlock')] == \
            [[10000], [2000], [1]]
        purchase = self.chain.calls('purchaseTokens')
        assert purchase[0]['sender'] == JAMES
        assert purchase[0]['value'] == 420 * 1000

    def test_pre_sale_purchase_rejected(self):
        self.verifier.check_pre_sale_purchase()
        assert self.balance(JAMES) == 0

    def test_pre_sale_purchase_skipped_after_start(self):
        self.chain.block = 1000
        results = self.statuses(self.verifier.run())
        assert results['purchases are rejected before startBlock'] == verify.SKIPPED
        assert list(results.values()).count(verify.SKIPPED) == 1

    def test_owner_price_change(self):
        self.verifier.check_owner_change_price()
        assert self.sale.call('price') == 1000

        self.verifier.expect_rejected(MIGUEL, 'changePrice', 2666)
        self.verifier.expect_rejected(JAMES, 'changePrice', 2666)
        assert self.sale.call('price') == 1000

    def test_end_block_floor(self):
        self.verifier.check_end_block_floor()
        assert self.sale.call('endBlock') == 2000

    def test_expect_rejected_fails_on_success(self):
        with self.assertRaises(verify.VerificationFailed):
            self.verifier.expect_rejected(OWNER, 'changePrice', 1000)

    def test_wrong_pre_buyer_balance_fails(self):
        token = self.chain.at(self.sale.call('token'))
        token.transfer_from(PRE_BUYER, JAMES, 1)

        results = self.statuses(self.verifier.run())
        assert results['pre-buyers hold their allocations'] == verify.FAILED
        assert results['sale holds the supply minus pre-allocations'] == verify.PASSED

    def test_sale_balance_fails_after_leak(self):
        token = self.chain.at(self.sale.call('token'))
        token.transfer_from(self.sale.address, JAMES, 5)

        with self.assertRaises(verify.VerificationFailed) as ctx:
            self.verifier.check_sale_balance()
        assert 'The sale contract has an incorrect token balance.' in str(ctx.exception)

    def test_non_owner_that_can_mutate_is_reported(self):
        sale = self.chain.at(self.sale.address)
        sale.only_owner = lambda sender: None

        results = self.statuses(self.verifier.run())
        assert results['non-owner cannot change the price'] == verify.FAILED
        assert results['non-owner cannot change the owner'] == verify.FAILED
        assert results['non-owner cannot toggle the emergency flag'] == verify.FAILED

        # the non-owner changes went through, and were put back
        assert sale.price() == 1000
        assert sale.startBlock() == 1000
        assert sale.owner().lower() == OWNER
        assert sale.wallet().lower() == WALLET
        assert sale.emergencyFlag() is False
        assert not verify.all_passed(self.verifier.run())

    def test_owner_taken_by_non_owner_is_given_back(self):
        sale = self.chain.at(self.sale.address)
        sale.only_owner = lambda sender: None

        with self.assertRaises(verify.VerificationFailed):
            self.verifier.check_non_owner_change_owner()

        restore = self.chain.calls('changeOwner')[-1]
        assert restore['sender'] == JAMES
        assert [a.lower() for a in restore['args']] == [OWNER]
        assert sale.owner().lower() == OWNER

    def test_missing_disburser_fails_check(self):
        self.verifier.events = self.events[:1]

        results = self.statuses(self.verifier.run())
        assert results['disbursers hold their tranches'] == verify.FAILED

    def test_instantiation_mismatch(self):
        setup = dataclasses.replace(self.setup,
                                    sale=dataclasses.replace(self.setup.sale, price=999))
        verifier = verify.SaleVerifier(self.sale, setup, self.events, JAMES, MIGUEL)
        with self.assertRaises(verify.VerificationFailed):
            verifier.check_instantiation()

    def test_transport_failure_propagates(self):
        def unreachable(*args, **kwargs):
            raise ChainUnreachable('node went away')
        self.chain.call = unreachable

        with self.assertRaises(ChainUnreachable):
            self.verifier.run()

    def test_needs_two_other_accounts(self):
        self.chain._accounts = [OWNER, JAMES]
        with self.assertRaises(ConfigInvalid):
            verify.SaleVerifier.for_chain(self.sale, self.setup, self.events)


class DisburserResolutionTest(unittest.TestCase):

    def setUp(self):
        documents = scenario_documents()
        documents[3]['other'] = {'address': PRE_BUYER, 'tranches': [
            {'amount': 50, 'date': 1, 'period': 0}]}
        documents[3]['founders']['tranches'].append({'amount': 50, 'date': 2, 'period': 0})
        self.setup = build_setup(*documents)
        self.B = self.setup.beneficiaries[0].address
        self.P = self.setup.beneficiaries[1].address

    def test_lookup_is_case_insensitive(self):
        events = [record(BENEFICIARY.upper().replace('0X', '0x'), 25, 'd')]
        index, disburser = verify.disburser_for(events, BENEFICIARY, Tranche(25, 0, 0))
        assert (index, disburser) == (0, 'd')

    def test_lookup_miss(self):
        with self.assertRaises(MissingDisburser) as ctx:
            verify.disburser_for([record(BENEFICIARY, 25, 'd')], BENEFICIARY, Tranche(26, 0, 0))
        assert ctx.exception.beneficiary == BENEFICIARY

    def test_positional_pairing_with_equal_amounts(self):
        events = [record(self.B, 50, 'd0'), record(self.B, 25, 'd1'),
                  record(self.B, 50, 'd2'), record(self.P, 50, 'd3')]

        resolved = verify.resolve_disbursers(self.setup.beneficiaries, events)

        assert [d for _, d in resolved] == ['d0', 'd1', 'd2', 'd3']
        assert [t.date for (_, t), _ in resolved] == [1700000000, 1700086400, 2, 1]

    def test_out_of_position_records_fall_back_to_lookup(self):
        events = [record(self.B, 25, 'd1'), record(self.B, 50, 'd0'),
                  record(self.B, 50, 'd2'), record(self.P, 50, 'd3')]

        with self.assertLogs('tokensale.verify', level='WARNING'):
            resolved = verify.resolve_disbursers(self.setup.beneficiaries, events)

        # each record is used once
        assert sorted(d for _, d in resolved) == ['d0', 'd1', 'd2', 'd3']
        assert resolved[1][1] == 'd1'
        assert resolved[3][1] == 'd3'

    def test_missing_record(self):
        events = [record(self.B, 50, 'd0'), record(self.B, 25, 'd1'), record(self.P, 50, 'd3')]
        with self.assertRaises(MissingDisburser) as ctx:
            verify.resolve_disbursers(self.setup.beneficiaries, events)
        assert ctx.exception.beneficiary.lower() == BENEFICIARY
