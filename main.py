import asyncio
import logging
from pathlib import Path
from typing import Optional
import argparse
import sys

from config.config import KeyStore, OrchestratorConfig, load_config, load_election_config
from election.models import ElectionOutcome
from election_orchestrator import ElectionOrchestrator, demonstrate_election
from ledger.client import Web3LedgerClient
from ledger.contract_crypto import ContractCryptoService
from utils.errors import ConfigError, ElectionError
from utils.utils import format_duration, setup_logging, save_results
from zk.zk_proofs import LocalCryptoService

logger = logging.getLogger(__name__)


def apply_overrides(settings: OrchestratorConfig, args) -> OrchestratorConfig:
    """Command line values win over the config file"""
    ledger = settings.ledger
    if args.url:
        ledger.url = args.url
    if args.vote_addr:
        ledger.vote_address = args.vote_addr
    if args.crypto_addr:
        ledger.crypto_address = args.crypto_addr
    if args.crypto:
        settings.crypto_backend = args.crypto
    return settings


async def run_election(args, settings: OrchestratorConfig) -> ElectionOutcome:
    """Conduct the protocol against a running node"""
    keystore = KeyStore.from_file(args.keys)
    config = load_election_config(args.election_config, keystore)

    if not settings.ledger.vote_address or not settings.ledger.crypto_address:
        raise ConfigError("--vote-addr and --crypto-addr are required", operation="setup")

    ledger, crypto_contract = Web3LedgerClient.connect(settings.ledger, keystore)
    if settings.crypto_backend == "contract":
        crypto = ContractCryptoService(ledger, crypto_contract, caller=config.admin)
    else:
        crypto = LocalCryptoService()

    orchestrator = ElectionOrchestrator(config, keystore, ledger, crypto, settings)
    outcome = await orchestrator.run()

    save_results({
        'tally': outcome.tally,
        'reports': outcome.reports,
        'error': outcome.error,
        'final_phase': outcome.final_phase,
        'audit_summary': outcome.audit_summary,
    }, settings.results_dir / "election_report.json")
    orchestrator.ctx.audit.save_metrics(settings.results_dir / "audit_metrics.json")
    return outcome


def report(outcome: ElectionOutcome):
    print("\n" + "=" * 40)
    print("ELECTION RESULTS")
    print("=" * 40)
    for phase_report in outcome.reports:
        print(f"  {phase_report.summary()}")
        for address, error in phase_report.failed.items():
            print(f"    {address}: {error}")
    if outcome.tally:
        print(f"\nFinal tally: {outcome.tally.yes} Yes votes out of {outcome.tally.total} total votes")
    if outcome.error:
        print(f"\nElection failed: {outcome.error}")
    print(f"Time spent on audited operations: "
          f"{format_duration(outcome.audit_summary.get('total_duration', 0.0))}")
    print(f"Election now in state: {outcome.final_phase.name if outcome.final_phase else 'UNKNOWN'}")


def main(argv: Optional[list] = None):
    parser = argparse.ArgumentParser(
        description='Self-Tallying Election Orchestrator')
    parser.add_argument(
        '--mode', choices=['run', 'demo'], default='run')
    parser.add_argument('--url', type=str, help='Ledger node RPC URL')
    parser.add_argument('--vote-addr', dest='vote_addr', type=str,
                        help='AnonymousVoting contract address')
    parser.add_argument('--crypto-addr', dest='crypto_addr', type=str,
                        help='LocalCrypto contract address')
    parser.add_argument('--keys', type=str, default='accountKeys.json',
                        help='Key store JSON path')
    parser.add_argument('--election-config', dest='election_config', type=str,
                        default='electionConfig.txt', help='Election config path')
    parser.add_argument('--config', type=str,
                        default='config.yaml', help='Orchestrator config file path')
    parser.add_argument('--crypto', choices=['local', 'contract'],
                        help='Where proofs are built')
    parser.add_argument('--voters', type=int, default=5,
                        help='Number of voters (demo mode)')
    parser.add_argument('--log-level', dest='log_level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'])

    args = parser.parse_args(argv)

    try:
        settings = apply_overrides(load_config(Path(args.config)), args)
    except ElectionError as e:
        print(f"Configuration error: {e}")
        sys.exit(1)

    setup_logging(args.log_level, settings.log_dir / "election.log")

    try:
        if args.mode == 'demo':
            outcome = asyncio.run(demonstrate_election(args.voters, settings))
        else:
            outcome = asyncio.run(run_election(args, settings))
            report(outcome)
    except ConfigError as e:
        print(f"Configuration error: {e}")
        sys.exit(1)
    except ElectionError as e:
        logger.error(f"Election aborted: {e}")
        sys.exit(1)

    sys.exit(0 if outcome.ok else 1)


if __name__ == "__main__":
    main()
