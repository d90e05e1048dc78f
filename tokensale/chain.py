"""
Thin gateway over a web3 client.

Contracts are addressed by their artifact name (truffle build output,
<artifacts_dir>/<Name>.json with "abi" and "bytecode"). Writes block until
the receipt is observed, so callers submitting in a loop are serial.
"""
import json
import logging
import os
from collections import namedtuple
from contextlib import contextmanager

import requests
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception
from web3.logs import DISCARD

from tokensale.errors import (ChainRejected, ChainTimeout, ChainUnreachable, ConfigInvalid,
                              is_evm_exception)

log = logging.getLogger(__name__)

SALE = 'Sale'
TOKEN = 'HumanStandardToken'
DISBURSEMENT = 'Disbursement'

# Used when the build directory carries no token artifact; balanceOf is all we read.
TOKEN_ABI = [
    {"name": "balanceOf", "type": "function", "stateMutability": "view", "constant": True,
     "inputs": [{"name": "_owner", "type": "address"}],
     "outputs": [{"name": "balance", "type": "uint256"}]},
]

SEND_OBJECT_KEYS = ('from', 'to', 'gas', 'gasPrice', 'value')

Receipt = namedtuple('Receipt', ['tx_hash', 'block_number', 'gas_used', 'contract_address',
                                 'events'])


class Artifacts(object):

    def __init__(self, directory):
        self.directory = directory
        self._cache = {}

    def _load(self, name):
        if name not in self._cache:
            path = os.path.join(self.directory, name + '.json')
            if not os.path.isfile(path):
                if name == TOKEN:
                    return {'abi': TOKEN_ABI}
                raise ConfigInvalid(path, "missing contract artifact")
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    self._cache[name] = json.load(f)
            except ValueError as e:
                raise ConfigInvalid(path, "unreadable artifact: {}".format(e))
        return self._cache[name]

    def abi(self, name):
        artifact = self._load(name)
        if 'abi' not in artifact:
            raise ConfigInvalid(name, "artifact has no abi")
        return artifact['abi']

    def bytecode(self, name):
        bytecode = self._load(name).get('bytecode')
        if isinstance(bytecode, dict):
            bytecode = bytecode.get('object')
        if not bytecode:
            raise ConfigInvalid(name, "artifact has no bytecode")
        return bytecode


def _plain(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(value)
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def event_record(event):
    """ Decoded web3 event -> JSON-ready dict, integers as decimal strings."""
    return {
        'event': event['event'],
        'args': dict((k, _plain(v)) for k, v in event['args'].items()),
        'address': event['address'],
        'logIndex': event['logIndex'],
        'transactionHash': Web3.to_hex(event['transactionHash']),
        'blockNumber': event['blockNumber'],
    }


@contextmanager
def chain_errors(action):
    try:
        yield
    except ContractLogicError as e:
        raise ChainRejected(action, str(e)) from e
    except (TimeExhausted, requests.exceptions.Timeout) as e:
        raise ChainTimeout("{} timed out: {}".format(action, e)) from e
    except (requests.exceptions.ConnectionError, ConnectionError) as e:
        raise ChainUnreachable("{} failed: {}".format(action, e)) from e
    except (Web3Exception, ValueError) as e:
        if is_evm_exception(e) or 'revert' in str(e).lower():
            raise ChainRejected(action, str(e)) from e
        raise


class Web3Gateway(object):

    def __init__(self, web3, artifacts, timeout=120, sender=None):
        self.web3 = web3
        self.artifacts = artifacts
        self.timeout = timeout
        self.sender = sender

    @classmethod
    def connect(cls, url, artifacts_dir, timeout=120, sender=None):
        provider = Web3.HTTPProvider(url, request_kwargs={"timeout": timeout})
        return cls(Web3(provider), Artifacts(artifacts_dir), timeout, sender)

    def default_sender(self):
        return self.sender or self.accounts()[0]

    def accounts(self):
        with chain_errors('eth_accounts'):
            return list(self.web3.eth.accounts)

    def block_number(self):
        with chain_errors('eth_blockNumber'):
            return self.web3.eth.block_number

    def _contract(self, name, address):
        return self.web3.eth.contract(address=Web3.to_checksum_address(address),
                                      abi=self.artifacts.abi(name))

    def _wait(self, action, tx_hash, contract=None):
        receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.timeout)
        if receipt.get('status', 1) == 0:
            raise ChainRejected(action, "transaction {} failed with status 0".format(
                Web3.to_hex(tx_hash)))
        events = self._decode_events(contract, receipt) if contract is not None else []
        return Receipt(
            tx_hash=Web3.to_hex(tx_hash),
            block_number=receipt['blockNumber'],
            gas_used=receipt['gasUsed'],
            contract_address=receipt.get('contractAddress'),
            events=events,
        )

    def _decode_events(self, contract, receipt):
        decoded = []
        for entry in contract.abi:
            if entry.get('type') != 'event':
                continue
            event = getattr(contract.events, entry['name'])()
            decoded.extend(event.process_receipt(receipt, errors=DISCARD))
        decoded.sort(key=lambda e: e['logIndex'])
        return [event_record(e) for e in decoded]

    def deploy(self, name, args, sender=None):
        action = '{} deployment'.format(name)
        factory = self.web3.eth.contract(abi=self.artifacts.abi(name),
                                         bytecode=self.artifacts.bytecode(name))
        tx = {'from': sender or self.default_sender()}
        with chain_errors(action):
            tx_hash = factory.constructor(*args).transact(tx)
            return self._wait(action, tx_hash)

    def call(self, name, address, method, *args):
        action = '{}.{}'.format(name, method)
        contract = self._contract(name, address)
        with chain_errors(action):
            return getattr(contract.functions, method)(*args).call()

    def transact(self, name, address, method, *args, sender=None, value=0):
        action = '{}.{}'.format(name, method)
        contract = self._contract(name, address)
        tx = {'from': sender or self.default_sender()}
        if value:
            tx['value'] = value
        with chain_errors(action):
            tx_hash = getattr(contract.functions, method)(*args).transact(tx)
            receipt = self._wait(action, tx_hash, contract)
        log.debug("%s mined in block %s (gas %s)", action, receipt.block_number,
                  receipt.gas_used)
        return receipt


class ContractHandle(object):
    """ `Name.at(address)`: a deployed contract bound to a gateway."""

    def __init__(self, gateway, name, address):
        self.gateway = gateway
        self.name = name
        self.address = address

    def call(self, method, *args):
        return self.gateway.call(self.name, self.address, method, *args)

    def transact(self, method, *args, sender=None, value=0):
        return self.gateway.transact(self.name, self.address, method, *args,
                                     sender=sender, value=value)

    def at(self, name, address):
        return ContractHandle(self.gateway, name, address)

    def __repr__(self):
        return '<{} at {}>'.format(self.name, self.address)


def send_as(actor, fn, *args):
    """ Calls a transact-style fn with actor as sender.

    A trailing send-options mapping is refused rather than overwritten.
    """
    if args and isinstance(args[-1], dict) and any(k in args[-1] for k in SEND_OBJECT_KEYS):
        raise ValueError('It is unsafe to use "send_as" with custom send objects')
    return fn(*args, sender=actor)


def token_of(sale):
    return sale.at(TOKEN, sale.call('token'))


def balance_of(token, address):
    return int(token.call('balanceOf', address))
