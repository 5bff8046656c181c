import asyncio
import logging
import json
from typing import Any, Dict
from pathlib import Path
import argparse
import sys

from config.config import SystemConfig, load_config
from utils.utils import setup_logging, PerformanceMonitor, create_performance_report, format_duration
from zk.aggregator import AggregatorClient
from zk.commitment import CommitmentEngine, generate_nonce
from zk.backend import BarretenbergCli
from zk.errors import ZKError
from zk.field import LibraryFieldHasher, field_to_hex
from zk.onchain import OnChainVerifier
from zk.proof_service import ProofService
from zk.types import CircuitName, ZKProof
from zk.verification import VerificationOptions, VerificationOrchestrator

logger = logging.getLogger(__name__)

CIRCUIT_CHOICES = [c.value for c in CircuitName]


def _write_json(data: Dict[str, Any], output: str = None):
    text = json.dumps(data, indent=2)
    if output:
        Path(output).write_text(text)
        logger.info(f"Wrote {output}")
    else:
        print(text)


def cmd_deck(config: SystemConfig, args) -> bool:
    zk_config = config.zk_config
    library = None
    if args.offline:
        engine = CommitmentEngine(depth=zk_config.merkle_depth)
    else:
        library = BarretenbergCli(zk_config.bb_binary, zk_config.nargo_binary, zk_config.command_timeout)
        engine = CommitmentEngine(LibraryFieldHasher(library), depth=zk_config.merkle_depth)

    try:
        deck = engine.canonical_deck()
        committed = engine.commit_deck(deck, [generate_nonce() for _ in deck])
    finally:
        if library is not None:
            library.destroy()

    _write_json({
        'hasher': 'sha256-reference' if args.offline else 'pedersen',
        'canonical_deck': [field_to_hex(uid) for uid in deck],
        'sample_merkle_root': field_to_hex(committed.root),
    }, args.output)
    return True


async def cmd_preload(config: SystemConfig, args) -> bool:
    service = ProofService(config.zk_config)
    monitor = PerformanceMonitor()
    with monitor.start_operation("preload_circuits"):
        circuits = await service.preload_circuits()

    for circuit in circuits:
        print(f"  {circuit.name}: loaded (vk {'precomputed' if circuit.vk else 'pending'})")
    print(create_performance_report(monitor))
    return True


async def cmd_prove(config: SystemConfig, args) -> bool:
    service = ProofService(config.zk_config)
    inputs = json.loads(Path(args.inputs).read_text())

    proof = await service.generate_proof(args.circuit, inputs)
    print(f"Generated {args.circuit} proof in {format_duration(proof.generation_time)}")
    _write_json(proof.to_dict(), args.output)
    return True


async def cmd_verify(config: SystemConfig, args) -> bool:
    service = ProofService(config.zk_config)
    proof = ZKProof.from_dict(json.loads(Path(args.proof).read_text()))

    aggregator = AggregatorClient(config.aggregator_config) if args.aggregator else None
    onchain = OnChainVerifier(config.onchain_config) if args.on_chain else None
    orchestrator = VerificationOrchestrator(service, aggregator, onchain)

    options = VerificationOptions(
        local=not args.skip_local,
        aggregator=args.aggregator,
        on_chain=args.on_chain,
        wait_for_aggregator=args.wait,
    )
    result = await orchestrator.verify_comprehensive(args.circuit, proof, options)
    _write_json(result.to_dict())
    return result.passed


async def cmd_register_vks(config: SystemConfig, args) -> bool:
    agg_config = config.aggregator_config
    if not agg_config.api_key:
        print("KURIER_API_KEY is not configured")
        return False

    unknown = set(args.circuits) - set(CIRCUIT_CHOICES)
    if unknown:
        print(f"Unknown circuits: {', '.join(sorted(unknown))}")
        return False

    service = ProofService(config.zk_config)
    client = AggregatorClient(agg_config)
    ok = True

    for name in args.circuits or CIRCUIT_CHOICES:
        try:
            vk = await service.get_verification_key(name)
            vk_hash = await client.register_verification_key(name, vk)
            print(f"  {name}: {vk_hash}")
        except ZKError as e:
            logger.error(f"VK registration for {name} failed: {e}")
            ok = False

    if agg_config.vk_hashes_file:
        client.save_vk_hashes(agg_config.vk_hashes_file)
        print(f"VK hashes saved to {agg_config.vk_hashes_file}")
    return ok


async def cmd_status(config: SystemConfig, args) -> bool:
    client = AggregatorClient(config.aggregator_config)
    health = await client.check_health()
    print(f"Aggregator: {health['status']} ({health['version']})")
    print(f"VK hashes: {', '.join(sorted(client.vk_hashes)) or 'none registered'}")
    return health['status'] != 'down'


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Teen Patti ZK proof pipeline')
    parser.add_argument('--config', type=str,
                        default='config.yaml', help='Config file path')
    parser.add_argument('--log-level', type=str, default=None,
                        help='Override the configured log level')

    sub = parser.add_subparsers(dest='command', required=True)

    deck = sub.add_parser('deck', help='Print canonical deck UIDs and a sample commitment root')
    deck.add_argument('-o', '--output', type=str, default=None)
    deck.add_argument('--offline', action='store_true',
                      help='Use the SHA-256 reference hasher instead of Pedersen (not accepted by the circuits)')

    sub.add_parser('preload', help='Load all circuits and report timings')

    prove = sub.add_parser('prove', help='Generate a proof from a witness JSON file')
    prove.add_argument('circuit', choices=CIRCUIT_CHOICES)
    prove.add_argument('inputs', type=str)
    prove.add_argument('-o', '--output', type=str, default=None)

    verify = sub.add_parser('verify', help='Run the verification pipeline on a proof JSON file')
    verify.add_argument('circuit', choices=CIRCUIT_CHOICES)
    verify.add_argument('proof', type=str)
    verify.add_argument('--skip-local', action='store_true')
    verify.add_argument('--aggregator', action='store_true')
    verify.add_argument('--wait', action='store_true',
                        help='Poll the aggregator job to a terminal state')
    verify.add_argument('--on-chain', action='store_true')

    register = sub.add_parser('register-vks', help='Register verification keys with the aggregator')
    register.add_argument('circuits', nargs='*', metavar='circuit',
                          help=f"Subset of {', '.join(CIRCUIT_CHOICES)} (default: all)")

    sub.add_parser('status', help='Aggregator health')

    return parser


COMMANDS = {
    'preload': cmd_preload,
    'prove': cmd_prove,
    'verify': cmd_verify,
    'register-vks': cmd_register_vks,
    'status': cmd_status,
}


def main(argv=None):
    args = build_parser().parse_args(argv)
    config = load_config(Path(args.config))

    setup_logging(args.log_level or config.log_level, log_dir=config.log_dir)

    try:
        if args.command == 'deck':
            success = cmd_deck(config, args)
        else:
            success = asyncio.run(COMMANDS[args.command](config, args))
    except (ZKError, OSError, ValueError) as e:
        logger.error(f"{args.command} failed: {e}")
        success = False

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
