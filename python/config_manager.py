"""
Configuration Management Module
Loads and validates screening configuration from config.yaml
"""

import yaml
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional, List

logger = logging.getLogger(__name__)

BLOCKING_KEYS = ('soundex', 'prefix', 'none')


@dataclass
class MatchingConfig:
    """Matching configuration parameters"""
    default_threshold: float = 0.80
    weights: Dict[str, float] = field(default_factory=lambda: {
        'name': 0.40,
        'document': 0.30,
        'dob': 0.15,
        'nationality': 0.10,
        'address': 0.05
    })


@dataclass
class IndexConfig:
    """Candidate filtering applied before precise scoring"""
    blocking_key: str = "soundex"  # soundex, prefix, none
    prefix_length: int = 3
    filter_by_type: bool = True
    min_token_length: int = 2


@dataclass
class SourceConfig:
    """A configured watchlist source"""
    name: str
    kind: str  # file, http
    location: str
    timeout_seconds: float = 60.0
    retry_attempts: int = 3


@dataclass
class RefreshConfig:
    """Background refresh scheduling"""
    interval_seconds: float = 3600.0
    backoff_initial_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    backoff_max_seconds: float = 1800.0
    refresh_on_start: bool = True
    sources: List[SourceConfig] = field(default_factory=list)


@dataclass
class ReportingConfig:
    """Recommendation thresholds applied to composite scores"""
    recommendation_thresholds: Dict[str, float] = field(default_factory=lambda: {
        'auto_clear': 0.60,
        'manual_review': 0.85,
        'auto_escalate': 0.95
    })


@dataclass
class InputValidationConfig:
    """Input validation configuration for user-provided data"""
    name_min_length: int = 2
    name_max_length: int = 200
    document_max_length: int = 50
    blocked_characters: str = "<>{}[]|\\;`$"


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: Optional[str] = None
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    audit_file: Optional[str] = None


@dataclass
class MonitoringConfig:
    """Operation timing configuration"""
    slow_operation_threshold_ms: float = 250.0
    enable_prometheus: bool = True


@dataclass
class AlgorithmConfig:
    """Algorithm version information"""
    version: str = "3.0.0"
    name: str = "Weighted Multi-Field Matcher"


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


class ConfigManager:
    """Manages system configuration"""

    _instance: Optional['ConfigManager'] = None

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration manager

        Args:
            config_path: Path to config.yaml file
        """
        self.config_path = Path(config_path) if config_path else self._find_config()
        self._raw_config: Dict[str, Any] = {}
        self.matching: MatchingConfig = MatchingConfig()
        self.index: IndexConfig = IndexConfig()
        self.refresh: RefreshConfig = RefreshConfig()
        self.reporting: ReportingConfig = ReportingConfig()
        self.input_validation: InputValidationConfig = InputValidationConfig()
        self.logging: LoggingConfig = LoggingConfig()
        self.monitoring: MonitoringConfig = MonitoringConfig()
        self.algorithm: AlgorithmConfig = AlgorithmConfig()

        if self.config_path and self.config_path.exists():
            self.load()
        else:
            logger.warning(f"Config file not found at {self.config_path}, using defaults")

    def _find_config(self) -> Path:
        """Find config.yaml in common locations"""
        search_paths = [
            Path(__file__).parent / "config.yaml",
            Path.cwd() / "config.yaml",
            Path.cwd() / "python" / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return search_paths[0]

    def load(self) -> None:
        """Load configuration from YAML file"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self._raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {self.config_path}")

        if not isinstance(self._raw_config, dict):
            raise ConfigurationError("Config file must contain a mapping at the top level")

        self._parse_matching()
        self._parse_index()
        self._parse_refresh()
        self._parse_reporting()
        self._parse_input_validation()
        self._parse_logging()
        self._parse_monitoring()
        self._parse_algorithm()
        self._validate()

    def _parse_matching(self) -> None:
        """Parse matching configuration"""
        cfg = self._raw_config.get('matching', {})
        self.matching = MatchingConfig(
            default_threshold=float(cfg.get('default_threshold', self.matching.default_threshold)),
            weights=dict(cfg.get('weights', self.matching.weights))
        )

    def _parse_index(self) -> None:
        """Parse index configuration"""
        cfg = self._raw_config.get('index', {})
        self.index = IndexConfig(
            blocking_key=str(cfg.get('blocking_key', 'soundex')).lower(),
            prefix_length=int(cfg.get('prefix_length', 3)),
            filter_by_type=cfg.get('filter_by_type', True),
            min_token_length=int(cfg.get('min_token_length', 2))
        )

    def _parse_refresh(self) -> None:
        """Parse refresh configuration including the source list"""
        cfg = self._raw_config.get('refresh', {})

        sources = []
        for entry in cfg.get('sources', []) or []:
            try:
                sources.append(SourceConfig(
                    name=entry['name'],
                    kind=str(entry.get('kind', 'file')).lower(),
                    location=entry.get('location') or entry.get('url') or entry.get('path'),
                    timeout_seconds=float(entry.get('timeout_seconds', 60.0)),
                    retry_attempts=int(entry.get('retry_attempts', 3))
                ))
            except (KeyError, TypeError, ValueError) as e:
                raise ConfigurationError(f"Invalid source entry {entry!r}: {e}")

        self.refresh = RefreshConfig(
            interval_seconds=float(cfg.get('interval_seconds', 3600.0)),
            backoff_initial_seconds=float(cfg.get('backoff_initial_seconds', 30.0)),
            backoff_multiplier=float(cfg.get('backoff_multiplier', 2.0)),
            backoff_max_seconds=float(cfg.get('backoff_max_seconds', 1800.0)),
            refresh_on_start=cfg.get('refresh_on_start', True),
            sources=sources
        )

    def _parse_reporting(self) -> None:
        """Parse reporting configuration"""
        cfg = self._raw_config.get('reporting', {})
        self.reporting = ReportingConfig(
            recommendation_thresholds=dict(cfg.get('recommendation_thresholds',
                                                   self.reporting.recommendation_thresholds))
        )

    def _parse_input_validation(self) -> None:
        """Parse input validation configuration"""
        cfg = self._raw_config.get('input_validation', {})
        self.input_validation = InputValidationConfig(
            name_min_length=int(cfg.get('name_min_length', 2)),
            name_max_length=int(cfg.get('name_max_length', 200)),
            document_max_length=int(cfg.get('document_max_length', 50)),
            blocked_characters=cfg.get('blocked_characters', "<>{}[]|\\;`$")
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._raw_config.get('logging', {})
        self.logging = LoggingConfig(
            level=cfg.get('level', 'INFO'),
            file=cfg.get('file'),
            console=cfg.get('console', True),
            format=cfg.get('format', self.logging.format),
            audit_file=cfg.get('audit_file')
        )

    def _parse_monitoring(self) -> None:
        """Parse monitoring configuration"""
        cfg = self._raw_config.get('monitoring', {})
        self.monitoring = MonitoringConfig(
            slow_operation_threshold_ms=float(cfg.get('slow_operation_threshold_ms', 250.0)),
            enable_prometheus=cfg.get('enable_prometheus', True)
        )

    def _parse_algorithm(self) -> None:
        """Parse algorithm configuration"""
        cfg = self._raw_config.get('algorithm', {})
        self.algorithm = AlgorithmConfig(
            version=cfg.get('version', self.algorithm.version),
            name=cfg.get('name', self.algorithm.name)
        )

    @classmethod
    def get_instance(cls, config_path: Optional[str] = None) -> 'ConfigManager':
        """Get singleton instance of ConfigManager"""
        if cls._instance is None:
            cls._instance = ConfigManager(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)"""
        cls._instance = None

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary"""
        return {
            'matching': {
                'default_threshold': self.matching.default_threshold,
                'weights': self.matching.weights
            },
            'index': {
                'blocking_key': self.index.blocking_key,
                'prefix_length': self.index.prefix_length,
                'filter_by_type': self.index.filter_by_type,
                'min_token_length': self.index.min_token_length
            },
            'refresh': {
                'interval_seconds': self.refresh.interval_seconds,
                'backoff_initial_seconds': self.refresh.backoff_initial_seconds,
                'backoff_multiplier': self.refresh.backoff_multiplier,
                'backoff_max_seconds': self.refresh.backoff_max_seconds,
                'refresh_on_start': self.refresh.refresh_on_start,
                'sources': [
                    {'name': s.name, 'kind': s.kind, 'location': s.location,
                     'timeout_seconds': s.timeout_seconds, 'retry_attempts': s.retry_attempts}
                    for s in self.refresh.sources
                ]
            },
            'reporting': {
                'recommendation_thresholds': self.reporting.recommendation_thresholds
            },
            'algorithm': {
                'version': self.algorithm.version,
                'name': self.algorithm.name
            }
        }

    def _validate(self) -> None:
        """Validate configuration values

        Raises:
            ConfigurationError: If any value is out of range
        """
        weights = self.matching.weights
        if 'name' not in weights or weights['name'] <= 0:
            raise ConfigurationError("matching.weights.name must be present and positive")
        if any(w < 0 for w in weights.values()):
            raise ConfigurationError(f"matching.weights must be non-negative: {weights}")
        total = sum(weights.values())
        if abs(total - 1.0) > 0.01:
            raise ConfigurationError(f"matching.weights must sum to 1.0 (got {total:.2f})")

        if not 0.0 <= self.matching.default_threshold <= 1.0:
            raise ConfigurationError("matching.default_threshold must be within [0, 1]")

        thresholds = self.reporting.recommendation_thresholds
        try:
            ordered = [thresholds['auto_clear'], thresholds['manual_review'], thresholds['auto_escalate']]
        except KeyError as e:
            raise ConfigurationError(f"Missing recommendation threshold: {e}")
        if ordered != sorted(ordered):
            raise ConfigurationError(
                "recommendation_thresholds must satisfy auto_clear <= manual_review <= auto_escalate"
            )
        if any(not 0.0 <= t <= 1.0 for t in ordered):
            raise ConfigurationError("recommendation_thresholds must be within [0, 1]")

        iv = self.input_validation
        if iv.name_min_length < 1:
            raise ConfigurationError("input_validation.name_min_length must be at least 1")
        if iv.name_max_length < iv.name_min_length:
            raise ConfigurationError("input_validation.name_max_length must be >= name_min_length")
        if iv.name_max_length > 1000:
            raise ConfigurationError("input_validation.name_max_length must not exceed 1000")
        if iv.document_max_length < 1:
            raise ConfigurationError("input_validation.document_max_length must be at least 1")

        if self.index.blocking_key not in BLOCKING_KEYS:
            raise ConfigurationError(
                f"index.blocking_key must be one of {BLOCKING_KEYS}, got '{self.index.blocking_key}'"
            )
        if self.index.prefix_length < 1:
            raise ConfigurationError("index.prefix_length must be at least 1")

        refresh = self.refresh
        if refresh.interval_seconds <= 0 or refresh.backoff_initial_seconds <= 0:
            raise ConfigurationError("refresh intervals must be positive")
        if refresh.backoff_multiplier < 1.0:
            raise ConfigurationError("refresh.backoff_multiplier must be >= 1.0")
        if refresh.backoff_max_seconds < refresh.backoff_initial_seconds:
            raise ConfigurationError("refresh.backoff_max_seconds must be >= backoff_initial_seconds")
        for source in refresh.sources:
            if source.kind not in ('file', 'http'):
                raise ConfigurationError(f"Unknown source kind '{source.kind}' for {source.name}")
            if not source.location:
                raise ConfigurationError(f"Source {source.name} has no location")
            if source.retry_attempts < 1:
                raise ConfigurationError(f"Source {source.name}: retry_attempts must be at least 1")


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)
