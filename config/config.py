"""
Configuration for the election orchestrator.

Three sources feed a run:
- the key store (accountKeys.json) mapping addresses to private keys
- the election definition (electionConfig.txt, or the same fields as YAML)
- the orchestrator settings (config.yaml), covering ledger endpoints,
  retry bounds, worker pool size and deadline polling
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union

import yaml
from eth_account import Account

from utils.errors import ConfigError

logger = logging.getLogger(__name__)

GAS_LIMIT = 30_000_000
WEI_DEPOSIT = 5 * 10**18
DEFAULT_QUESTION = "Voting question"


# ============================================================================
# KEY STORE
# ============================================================================


class KeyStore:
    """Address to private key mapping read from accountKeys.json"""

    def __init__(self, keys: Mapping[str, Optional[str]]):
        # Preserve file order; look up case-insensitively
        self._keys: Dict[str, Optional[str]] = dict(keys)
        self._canonical: Dict[str, str] = {a.lower(): a for a in self._keys}

    def __contains__(self, address: str) -> bool:
        return isinstance(address, str) and address.strip().lower() in self._canonical

    def __len__(self) -> int:
        return len(self._keys)

    def resolve(self, address: str) -> str:
        """Canonical spelling of an address, or ConfigError if unknown"""
        canonical = self._canonical.get(address.strip().lower())
        if canonical is None:
            raise ConfigError("address not in key store", address=address.strip())
        return canonical

    def addresses(self) -> List[str]:
        return list(self._keys)

    def private_key(self, address: str) -> str:
        key = self._keys.get(self.resolve(address))
        if not key:
            raise ConfigError("no private key on record", address=address)
        return key

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> 'KeyStore':
        """Read {"addresses": {...}, "private_keys": {...}}"""
        path = Path(path)
        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"cannot read key store {path}: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get('addresses'), dict):
            raise ConfigError(f"key store {path} has no 'addresses' object")

        private_keys = data.get('private_keys') or {}
        keys = {address: private_keys.get(address) for address in data['addresses']}
        logger.info(f"Loaded {len(keys)} accounts from {path}")
        return cls(keys)

    @classmethod
    def generate(cls, count: int) -> 'KeyStore':
        """Fresh throwaway accounts for demo runs"""
        keys = {}
        for _ in range(count):
            account = Account.create()
            keys[account.address] = "0x" + bytes(account.key).hex()
        return cls(keys)


# ============================================================================
# ELECTION DEFINITION
# ============================================================================


def validate_delegations(pairs: Iterable[Tuple[str, str]], keystore: KeyStore,
                         excluded: Iterable[str] = ()) -> Dict[str, str]:
    """
    Check delegator -> delegatee pairs and return them with canonical addresses.

    Both ends must be in the key store and neither may be excluded (admin,
    charity). A voter delegates at most once, receives at most one
    delegation, and cannot both delegate and receive.
    """
    excluded = {keystore.resolve(a) for a in excluded if a}
    delegations: Dict[str, str] = {}
    receivers: Dict[str, str] = {}

    for raw_delegator, raw_delegatee in pairs:
        if raw_delegator.strip() not in keystore:
            raise ConfigError("delegator not in key store", address=raw_delegator.strip())
        if raw_delegatee.strip() not in keystore:
            raise ConfigError("delegatee not in key store", address=raw_delegatee.strip())
        delegator = keystore.resolve(raw_delegator)
        delegatee = keystore.resolve(raw_delegatee)

        if delegator in excluded or delegatee in excluded:
            raise ConfigError("admin and charity cannot take part in delegation",
                              address=delegator if delegator in excluded else delegatee)
        if delegator == delegatee:
            raise ConfigError("cannot delegate to self", address=delegator)
        if delegator in delegations:
            raise ConfigError("voter delegates more than once", address=delegator)
        if delegatee in receivers:
            raise ConfigError(f"already receives the vote of {receivers[delegatee]}",
                              address=delegatee)
        if delegatee in delegations:
            raise ConfigError("already delegated their vote. Can't delegate to them",
                              address=delegatee)
        if delegator in receivers:
            raise ConfigError("already holds a delegated vote and cannot delegate",
                              address=delegator)

        delegations[delegator] = delegatee
        receivers[delegatee] = delegator

    return delegations


@dataclass(frozen=True)
class ElectionConfig:
    admin: str
    charity: str
    phase_gap: int
    delegations: Mapping[str, str] = field(default_factory=dict)
    no_votes: FrozenSet[str] = frozenset()
    question: str = DEFAULT_QUESTION
    deposit_wei: int = WEI_DEPOSIT

    def roster(self, keystore: KeyStore) -> List[str]:
        """Every key store address except the admin and the charity"""
        return [a for a in keystore.addresses() if a not in (self.admin, self.charity)]

    @classmethod
    def build(cls, keystore: KeyStore, admin: str, charity: str, phase_gap: Any,
              delegations: Iterable[Tuple[str, str]] = (), no_votes: Iterable[str] = (),
              question: str = DEFAULT_QUESTION, deposit_wei: Any = WEI_DEPOSIT) -> 'ElectionConfig':
        """Validate raw fields against the key store"""
        if not admin or admin.strip() not in keystore:
            raise ConfigError("specified admin not in key store", address=admin)
        if not charity or charity.strip() not in keystore:
            raise ConfigError("specified charity not in key store", address=charity)
        admin = keystore.resolve(admin)
        charity = keystore.resolve(charity)
        if admin == charity:
            raise ConfigError("admin and charity must differ", address=admin)

        try:
            phase_gap = int(phase_gap)
            deposit_wei = int(deposit_wei)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"phase gap and deposit must be integers: {e}") from e
        if phase_gap <= 0:
            raise ConfigError(f"phase gap must be positive, got {phase_gap}")
        if deposit_wei <= 0:
            raise ConfigError(f"deposit must be positive, got {deposit_wei}")

        checked = validate_delegations(delegations, keystore, excluded=(admin, charity))

        resolved_no_votes = set()
        for address in no_votes:
            if address.strip() not in keystore:
                raise ConfigError("no-vote address not in key store", address=address.strip())
            canonical = keystore.resolve(address)
            if canonical in (admin, charity):
                raise ConfigError("admin and charity do not vote", address=canonical)
            resolved_no_votes.add(canonical)

        config = cls(admin=admin, charity=charity, phase_gap=phase_gap,
                     delegations=checked, no_votes=frozenset(resolved_no_votes),
                     question=question or DEFAULT_QUESTION, deposit_wei=deposit_wei)
        if len(config.roster(keystore)) == 0:
            raise ConfigError("key store holds no voters besides admin and charity")
        return config

    @classmethod
    def parse_text(cls, text: str, keystore: KeyStore) -> 'ElectionConfig':
        """
        Parse the line format of electionConfig.txt:
        admin, charity, phase gap, `delegator:delegatee, ...`, `noVote, ...`
        """
        lines = text.splitlines()
        if len(lines) < 3:
            raise ConfigError("election config needs admin, charity and phase gap lines")

        pairs = []
        if len(lines) > 3 and lines[3].strip():
            for entry in lines[3].split(','):
                parts = entry.split(':')
                if len(parts) != 2 or not parts[0].strip() or not parts[1].strip():
                    raise ConfigError(f"malformed delegation '{entry.strip()}'")
                pairs.append((parts[0].strip(), parts[1].strip()))

        no_votes = []
        if len(lines) > 4 and lines[4].strip():
            no_votes = [a.strip() for a in lines[4].split(',') if a.strip()]

        return cls.build(keystore, lines[0].strip(), lines[1].strip(), lines[2].strip(),
                         delegations=pairs, no_votes=no_votes)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], keystore: KeyStore) -> 'ElectionConfig':
        raw = data.get('delegations') or {}
        if isinstance(raw, Mapping):
            pairs = list(raw.items())
        else:
            pairs = []
            for entry in raw:
                parts = str(entry).split(':')
                if len(parts) != 2:
                    raise ConfigError(f"malformed delegation '{entry}'")
                pairs.append((parts[0].strip(), parts[1].strip()))

        return cls.build(
            keystore,
            data.get('admin', ''),
            data.get('charity', ''),
            data.get('phase_gap'),
            delegations=pairs,
            no_votes=data.get('no_votes') or [],
            question=data.get('question', DEFAULT_QUESTION),
            deposit_wei=data.get('deposit_wei', WEI_DEPOSIT))


def load_election_config(path: Union[str, Path], keystore: KeyStore) -> ElectionConfig:
    """Load electionConfig.txt, or a YAML file with the same fields"""
    path = Path(path)
    try:
        text = path.read_text()
    except OSError as e:
        raise ConfigError(f"cannot read election config {path}: {e}") from e

    if path.suffix in ('.yaml', '.yml'):
        try:
            data = yaml.safe_load(text) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"malformed election config {path}: {e}") from e
        if not isinstance(data, Mapping):
            raise ConfigError(f"election config {path} must be a mapping")
        config = ElectionConfig.from_mapping(data, keystore)
    else:
        config = ElectionConfig.parse_text(text, keystore)

    logger.info(f"Election config: admin {config.admin}, charity {config.charity}, "
                f"{len(config.delegations)} delegations, {len(config.no_votes)} no votes")
    return config


# ============================================================================
# ORCHESTRATOR SETTINGS
# ============================================================================


@dataclass
class LedgerConfig:
    url: str = "http://127.0.0.1:8545"
    vote_address: str = ""
    crypto_address: str = ""
    vote_abi: Path = field(default_factory=lambda: Path("abis/voteAbi.json"))
    crypto_abi: Path = field(default_factory=lambda: Path("abis/cryptoAbi.json"))
    gas_limit: int = GAS_LIMIT
    request_timeout: float = 120.0

    def __post_init__(self):
        self.vote_abi = Path(self.vote_abi)
        self.crypto_abi = Path(self.crypto_abi)


@dataclass
class OrchestratorConfig:
    ledger: LedgerConfig = field(default_factory=LedgerConfig)

    # "local" builds proofs in-process, "contract" asks the crypto contract
    crypto_backend: str = "local"

    proof_attempts: int = 5
    proof_backoff: float = 0.05
    max_retries: int = 3
    retry_backoff: float = 0.5
    reconstruction_attempts: int = 3
    max_workers: int = 8

    deadline_buffer: float = 1.0
    poll_interval: float = 5.0
    reset_after_tally: bool = False

    audit_file: Path = field(default_factory=lambda: Path("logSummary.txt"))
    log_dir: Path = field(default_factory=lambda: Path("logs"))
    results_dir: Path = field(default_factory=lambda: Path("results"))

    def __post_init__(self):
        self.audit_file = Path(self.audit_file)
        self.log_dir = Path(self.log_dir)
        self.results_dir = Path(self.results_dir)

        if self.crypto_backend not in ("local", "contract"):
            raise ConfigError(f"unknown crypto backend '{self.crypto_backend}'")
        if self.max_workers < 1:
            raise ConfigError("max_workers must be at least 1")
        if self.proof_attempts < 1 or self.max_retries < 1:
            raise ConfigError("retry bounds must be at least 1")


def load_config(config_path: Optional[Path] = None) -> OrchestratorConfig:
    """Load orchestrator settings from YAML, or return defaults when the file is absent"""
    if config_path is None:
        config_path = Path("config.yaml")
    config_path = Path(config_path)

    if not config_path.exists():
        logger.warning(f"Config file {config_path} not found, using default configuration")
        return OrchestratorConfig()

    try:
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"could not load config file {config_path}: {e}") from e

    if not isinstance(config_data, dict):
        raise ConfigError(f"config file {config_path} must be a mapping")

    defaults = OrchestratorConfig()
    ledger_data = config_data.get('ledger', {}) or {}
    try:
        ledger_config = LedgerConfig(
            url=ledger_data.get('url', defaults.ledger.url),
            vote_address=ledger_data.get('vote_address', ''),
            crypto_address=ledger_data.get('crypto_address', ''),
            vote_abi=Path(ledger_data.get('vote_abi', defaults.ledger.vote_abi)),
            crypto_abi=Path(ledger_data.get('crypto_abi', defaults.ledger.crypto_abi)),
            gas_limit=int(ledger_data.get('gas_limit', GAS_LIMIT)),
            request_timeout=float(ledger_data.get('request_timeout', defaults.ledger.request_timeout))
        )

        return OrchestratorConfig(
            ledger=ledger_config,
            crypto_backend=config_data.get('crypto_backend', defaults.crypto_backend),
            proof_attempts=int(config_data.get('proof_attempts', defaults.proof_attempts)),
            proof_backoff=float(config_data.get('proof_backoff', defaults.proof_backoff)),
            max_retries=int(config_data.get('max_retries', defaults.max_retries)),
            retry_backoff=float(config_data.get('retry_backoff', defaults.retry_backoff)),
            reconstruction_attempts=int(config_data.get(
                'reconstruction_attempts', defaults.reconstruction_attempts)),
            max_workers=int(config_data.get('max_workers', defaults.max_workers)),
            deadline_buffer=float(config_data.get('deadline_buffer', defaults.deadline_buffer)),
            poll_interval=float(config_data.get('poll_interval', defaults.poll_interval)),
            reset_after_tally=bool(config_data.get('reset_after_tally', defaults.reset_after_tally)),
            audit_file=Path(config_data.get('audit_file', defaults.audit_file)),
            log_dir=Path(config_data.get('log_dir', defaults.log_dir)),
            results_dir=Path(config_data.get('results_dir', defaults.results_dir))
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid value in {config_path}: {e}") from e


def save_config(config: OrchestratorConfig, config_path: Optional[Path] = None):
    """Save orchestrator settings to YAML"""
    if config_path is None:
        config_path = Path("config.yaml")

    config_data = {
        'ledger': {
            'url': config.ledger.url,
            'vote_address': config.ledger.vote_address,
            'crypto_address': config.ledger.crypto_address,
            'vote_abi': str(config.ledger.vote_abi),
            'crypto_abi': str(config.ledger.crypto_abi),
            'gas_limit': config.ledger.gas_limit,
            'request_timeout': config.ledger.request_timeout
        },
        'crypto_backend': config.crypto_backend,
        'proof_attempts': config.proof_attempts,
        'proof_backoff': config.proof_backoff,
        'max_retries': config.max_retries,
        'retry_backoff': config.retry_backoff,
        'reconstruction_attempts': config.reconstruction_attempts,
        'max_workers': config.max_workers,
        'deadline_buffer': config.deadline_buffer,
        'poll_interval': config.poll_interval,
        'reset_after_tally': config.reset_after_tally,
        'audit_file': str(config.audit_file),
        'log_dir': str(config.log_dir),
        'results_dir': str(config.results_dir)
    }

    try:
        with open(config_path, 'w') as f:
            yaml.dump(config_data, f, default_flow_style=False)
    except OSError as e:
        logger.warning(f"Could not save config file {config_path}: {e}")
