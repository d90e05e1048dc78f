import logging
import os

from tokensale.chain import SALE, ContractHandle
from tokensale.config import read_json
from tokensale.errors import ConfigInvalid
from tokensale.logs import write_json

log = logging.getLogger(__name__)

DEFAULT_RECORD_PATH = os.path.join('deployments', 'sale.json')

FMT = '{0:<16}{1:}'


def sale_constructor_args(sale, token, pre_buyer_count, tranches_count):
    # Order is fixed by the Sale constructor ABI.
    return [
        sale.owner,
        sale.wallet,
        token.initial_amount,
        token.name,
        token.decimal_units,
        token.symbol,
        sale.price,
        sale.start_block,
        sale.freeze_block,
        pre_buyer_count,
        tranches_count,
        sale.end_block,
    ]


def deploy_sale(gateway, sale, token, pre_buyer_count, tranches_count, sender=None,
                record_path=None):
    """ Deploys the Sale (which deploys its token) and returns its address.

    With record_path set, the deployment record is written there as well.

    Failures are not retried; ChainRejected/ChainTimeout propagate to the caller.
    """
    args = sale_constructor_args(sale, token, pre_buyer_count, tranches_count)

    log.info("Deploying Sale")
    log.info(FMT.format('- Owner:', sale.owner))
    log.info(FMT.format('- Wallet:', sale.wallet))
    log.info(FMT.format('- Token:', '{} ({}, {} decimals, {} units)'.format(
        token.name, token.symbol, token.decimal_units, token.initial_amount)))
    log.info(FMT.format('- Price:', sale.price))
    log.info(FMT.format('- Blocks:', '{} / {} / {}'.format(
        sale.start_block, sale.freeze_block, sale.end_block)))
    log.info(FMT.format('- Pre-buyers:', pre_buyer_count))
    log.info(FMT.format('- Tranches:', tranches_count))

    receipt = gateway.deploy(SALE, args, sender=sender)
    log.info("Sale deployed at %s (tx %s, block %s)", receipt.contract_address,
             receipt.tx_hash, receipt.block_number)
    if record_path:
        write_json(deployment_record(receipt, args), record_path)
    return receipt.contract_address


def deployment_record(receipt, args):
    return {
        'contract': SALE,
        'address': receipt.contract_address,
        'transactionHash': receipt.tx_hash,
        'blockNumber': receipt.block_number,
        'constructorArgs': [str(a) if isinstance(a, int) else a for a in args],
    }


def deployed_sale(gateway, address=None, record_path=DEFAULT_RECORD_PATH):
    """ Handle to the deployed Sale: explicit address or the one in the deployment record."""
    if address is None:
        record = read_json(record_path)
        address = record.get('address')
        if not address:
            raise ConfigInvalid(record_path + '.address', "missing field")
    return ContractHandle(gateway, SALE, address)
