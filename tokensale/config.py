"""
Sale configuration documents.

Four JSON files describe a deployment:

  conf/sale.json        owner, wallet, price, startBlock, freezeBlock, endBlock
  conf/token.json       initialAmount, tokenName, decimalUnits, tokenSymbol
  conf/preBuyers.json   {key: {address, amount}}
  conf/timelocks.json   {key: {address, tranches: [{amount, date, period}]}}

Integers may be written as JSON numbers or decimal strings.
"""
import json
import os
import re
from collections import OrderedDict
from dataclasses import dataclass
from typing import Tuple

from eth_utils import is_address, to_checksum_address

from tokensale.errors import ConfigInvalid

SALE_FILE = 'sale.json'
TOKEN_FILE = 'token.json'
PRE_BUYERS_FILE = 'preBuyers.json'
TIMELOCKS_FILE = 'timelocks.json'

DEFAULT_CONF_DIR = 'conf'
DEFAULT_ARTIFACTS_DIR = os.path.join('build', 'contracts')
DEFAULT_RPC_URL = 'http://127.0.0.1:8545'
DEFAULT_TX_TIMEOUT = 120

_INT_RE = re.compile(r'^-?[0-9]+$')


@dataclass(frozen=True)
class SaleConfig:
    owner: str
    wallet: str
    price: int
    start_block: int
    freeze_block: int
    end_block: int


@dataclass(frozen=True)
class TokenConfig:
    initial_amount: int
    name: str
    decimal_units: int
    symbol: str


@dataclass(frozen=True)
class PreBuyer:
    key: str
    address: str
    amount: int


@dataclass(frozen=True)
class Tranche:
    amount: int
    date: int
    period: int


@dataclass(frozen=True)
class Beneficiary:
    key: str
    address: str
    tranches: Tuple[Tranche, ...]


@dataclass(frozen=True)
class SaleSetup:
    sale: SaleConfig
    token: TokenConfig
    pre_buyers: Tuple[PreBuyer, ...]
    beneficiaries: Tuple[Beneficiary, ...]

    @property
    def pre_buyer_count(self):
        return len(self.pre_buyers)

    @property
    def tranche_count(self):
        return sum(len(b.tranches) for b in self.beneficiaries)

    def total_pre_sold(self):
        return sum(p.amount for p in self.pre_buyers)

    def total_timelocked(self):
        return sum(t.amount for b in self.beneficiaries for t in b.tranches)

    def tokens_for_sale(self):
        return self.token.initial_amount - self.total_pre_sold() - self.total_timelocked()


# ---------------------------------------------------------------------------
# Field parsers
# ---------------------------------------------------------------------------

def _field(doc, name, path):
    if not isinstance(doc, dict):
        raise ConfigInvalid(path, "expected an object")
    if name not in doc:
        raise ConfigInvalid('{}.{}'.format(path, name), "missing field")
    return doc[name]


def parse_int(value, path, minimum=None):
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool):
        raise ConfigInvalid(path, "expected an integer, got {!r}".format(value))
    if isinstance(value, int):
        result = value
    elif isinstance(value, float) and value.is_integer():
        result = int(value)
    elif isinstance(value, str) and _INT_RE.match(value.strip()):
        result = int(value.strip(), 10)
    else:
        raise ConfigInvalid(path, "expected an integer, got {!r}".format(value))
    if minimum is not None and result < minimum:
        raise ConfigInvalid(path, "must be >= {}, got {}".format(minimum, result))
    return result


def parse_address(value, path):
    if not isinstance(value, str) or not is_address(value):
        raise ConfigInvalid(path, "not a valid address: {!r}".format(value))
    return to_checksum_address(value)


def parse_str(value, path):
    if not isinstance(value, str):
        raise ConfigInvalid(path, "expected a string, got {!r}".format(value))
    return value


def _entries(doc, path):
    """ (key, value) pairs in document order for both objects and arrays."""
    if isinstance(doc, dict):
        return [(str(k), v) for k, v in doc.items()]
    if isinstance(doc, list):
        return [(str(i), v) for i, v in enumerate(doc)]
    raise ConfigInvalid(path, "expected an object or an array")


def parse_sale(doc, path=SALE_FILE):
    sale = SaleConfig(
        owner=parse_address(_field(doc, 'owner', path), path + '.owner'),
        wallet=parse_address(_field(doc, 'wallet', path), path + '.wallet'),
        price=parse_int(_field(doc, 'price', path), path + '.price', minimum=0),
        start_block=parse_int(_field(doc, 'startBlock', path), path + '.startBlock', minimum=0),
        freeze_block=parse_int(_field(doc, 'freezeBlock', path), path + '.freezeBlock', minimum=0),
        end_block=parse_int(_field(doc, 'endBlock', path), path + '.endBlock', minimum=0),
    )
    if not sale.start_block <= sale.freeze_block <= sale.end_block:
        raise ConfigInvalid(path, "blocks must satisfy startBlock <= freezeBlock <= endBlock "
                                  "({} / {} / {})".format(sale.start_block, sale.freeze_block,
                                                          sale.end_block))
    return sale


def parse_token(doc, path=TOKEN_FILE):
    return TokenConfig(
        initial_amount=parse_int(_field(doc, 'initialAmount', path), path + '.initialAmount',
                                 minimum=0),
        name=parse_str(_field(doc, 'tokenName', path), path + '.tokenName'),
        decimal_units=parse_int(_field(doc, 'decimalUnits', path), path + '.decimalUnits',
                                minimum=0),
        symbol=parse_str(_field(doc, 'tokenSymbol', path), path + '.tokenSymbol'),
    )


def parse_pre_buyers(doc, path=PRE_BUYERS_FILE):
    pre_buyers = []
    for key, entry in _entries(doc, path):
        entry_path = '{}:{}'.format(path, key)
        pre_buyers.append(PreBuyer(
            key=key,
            address=parse_address(_field(entry, 'address', entry_path), entry_path + '.address'),
            amount=parse_int(_field(entry, 'amount', entry_path), entry_path + '.amount',
                             minimum=1),
        ))
    return tuple(pre_buyers)


def parse_tranche(doc, path):
    return Tranche(
        amount=parse_int(_field(doc, 'amount', path), path + '.amount', minimum=1),
        date=parse_int(_field(doc, 'date', path), path + '.date', minimum=0),
        period=parse_int(_field(doc, 'period', path), path + '.period', minimum=0),
    )


def parse_beneficiary(key, doc, path=TIMELOCKS_FILE):
    entry_path = '{}:{}'.format(path, key)
    address = parse_address(_field(doc, 'address', entry_path), entry_path + '.address')
    tranches_path = entry_path + '.tranches'
    tranches = tuple(
        parse_tranche(t, '{}[{}]'.format(tranches_path, i))
        for i, t in _entries(_field(doc, 'tranches', entry_path), tranches_path)
    )
    return Beneficiary(key=key, address=address, tranches=tranches)


def parse_timelocks(doc, path=TIMELOCKS_FILE):
    return tuple(parse_beneficiary(key, entry, path) for key, entry in _entries(doc, path))


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def read_json(path):
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f, object_pairs_hook=OrderedDict)
    except FileNotFoundError:
        raise ConfigInvalid(path, "file not found")
    except (OSError, ValueError) as e:
        raise ConfigInvalid(path, "unreadable JSON: {}".format(e))


def build_setup(sale_doc, token_doc, pre_buyers_doc, timelocks_doc):
    setup = SaleSetup(
        sale=parse_sale(sale_doc),
        token=parse_token(token_doc),
        pre_buyers=parse_pre_buyers(pre_buyers_doc),
        beneficiaries=parse_timelocks(timelocks_doc),
    )
    allocated = setup.total_pre_sold() + setup.total_timelocked()
    if allocated > setup.token.initial_amount:
        raise ConfigInvalid(TOKEN_FILE + '.initialAmount',
                            "{} is less than the {} tokens pre-allocated".format(
                                setup.token.initial_amount, allocated))
    return setup


def load_setup(conf_dir=DEFAULT_CONF_DIR):
    docs = [read_json(os.path.join(conf_dir, name))
            for name in (SALE_FILE, TOKEN_FILE, PRE_BUYERS_FILE, TIMELOCKS_FILE)]
    return build_setup(*docs)


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------

def env(name, default=None):
    return os.environ.get(name) or default


def env_int(name, default):
    value = os.environ.get(name)
    if not value:
        return default
    return parse_int(value, '$' + name, minimum=1)


def rpc_url():
    return env('RPC_URL', DEFAULT_RPC_URL)


def config_dir():
    return env('TOKENSALE_CONF_DIR', DEFAULT_CONF_DIR)


def artifacts_dir():
    return env('TOKENSALE_ARTIFACTS_DIR', DEFAULT_ARTIFACTS_DIR)


def tx_timeout():
    return env_int('TOKENSALE_TX_TIMEOUT', DEFAULT_TX_TIMEOUT)
