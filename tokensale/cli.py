"""
Operator entry point.

  tokensale deploy       deploy the Sale from conf/*.json
  tokensale distribute   distribute pre-buyer and timelocked tokens in batches,
                         then write logs_distribution/logs_distribution.json
  tokensale verify       check balances and Sale access control on chain

Exit status is 0 on success and 1 on any failure.
"""
import argparse
import logging
import sys

from tokensale import config, deploy, distribute, logs, verify
from tokensale.chain import Web3Gateway
from tokensale.errors import TokenSaleError
from tokensale.flatten import flatten

log = logging.getLogger('tokensale')


def _gateway(args):
    return Web3Gateway.connect(args.rpc, args.artifacts, timeout=args.timeout,
                               sender=args.sender)


def cmd_deploy(args):
    setup = config.load_setup(args.conf)
    flat = flatten(setup.beneficiaries)
    address = deploy.deploy_sale(_gateway(args), setup.sale, setup.token,
                                 setup.pre_buyer_count, len(flat.addresses),
                                 sender=args.sender, record_path=args.record)
    print(address)
    return 0


def cmd_distribute(args):
    setup = config.load_setup(args.conf)
    flat = flatten(setup.beneficiaries)
    sale = deploy.deployed_sale(_gateway(args), args.sale, args.record)
    events = distribute.distribute(sale, setup, flat, sender=args.sender,
                                   pre_batch_size=args.pre_batch_size,
                                   timelock_batch_size=args.timelock_batch_size)
    logs.persist(events, args.log_path)
    return 0


def cmd_verify(args):
    setup = config.load_setup(args.conf)
    events = logs.load(args.log_path)
    sale = deploy.deployed_sale(_gateway(args), args.sale, args.record)
    results = verify.SaleVerifier.for_chain(sale, setup, events).run()
    for result in results:
        line = '{0:<8}{1}'.format(result.status, result.name)
        if result.detail:
            line += ': ' + result.detail
        print(line)
    return 0 if verify.all_passed(results) else 1


def _parse_args(argv=None):
    pre_batch, timelock_batch = distribute.configured_batch_sizes()

    p = argparse.ArgumentParser(prog='tokensale',
                                description="Deploy, distribute and verify the token sale.")
    p.add_argument('--conf', default=config.config_dir(),
                   help="Directory with sale/token/preBuyers/timelocks JSON (default: conf)")
    p.add_argument('--rpc', default=config.rpc_url(), help="JSON-RPC URL of the node")
    p.add_argument('--artifacts', default=config.artifacts_dir(),
                   help="Directory with compiled contract artifacts (default: build/contracts)")
    p.add_argument('--sender', default=None,
                   help="Deployer account (default: first node account)")
    p.add_argument('--timeout', type=int, default=config.tx_timeout(),
                   help="Seconds to wait for each receipt")
    p.add_argument('--record', default=deploy.DEFAULT_RECORD_PATH,
                   help="Deployment record written by deploy and read by later phases")
    p.add_argument('-v', '--verbose', action='store_true', help="Debug logging")

    sub = p.add_subparsers(dest='command')
    sub.required = True

    sub.add_parser('deploy', help="Deploy the Sale contract").set_defaults(func=cmd_deploy)

    d = sub.add_parser('distribute', help="Distribute the initial token supply")
    d.add_argument('--sale', default=None, help="Sale address (default: from the record)")
    d.add_argument('--pre-batch-size', type=int, default=pre_batch)
    d.add_argument('--timelock-batch-size', type=int, default=timelock_batch)
    d.add_argument('--log-path', default=logs.DEFAULT_LOG_PATH)
    d.set_defaults(func=cmd_distribute)

    v = sub.add_parser('verify', help="Check balances and Sale access control on chain")
    v.add_argument('--sale', default=None, help="Sale address (default: from the record)")
    v.add_argument('--log-path', default=logs.DEFAULT_LOG_PATH)
    v.set_defaults(func=cmd_verify)

    return p.parse_args(argv)


def setup_logging(verbose=False):
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s: %(message)s'))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.INFO)


def main(argv=None):
    try:
        args = _parse_args(argv)
    except TokenSaleError as e:
        # bad TOKENSALE_* environment values surface while building defaults
        sys.stderr.write('error={} phase=args detail={}\n'.format(type(e).__name__, e))
        return 1
    setup_logging(args.verbose)
    try:
        return args.func(args)
    except TokenSaleError as e:
        log.error("error=%s phase=%s detail=%s", type(e).__name__, args.command, e)
        return 1


if __name__ == '__main__':
    sys.exit(main())
