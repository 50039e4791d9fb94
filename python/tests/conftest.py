"""
Shared fixtures for the watchlist screening tests
"""

import copy
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from audit_logger import AuditLogger
from config_manager import ConfigManager


SAMPLE_RECORDS = [
    {
        'id': '22790',
        'type': 'individual',
        'name': 'MADURO MOROS, Nicolas',
        'aliases': ['MADURO, Nicolas'],
        'dates_of_birth': ['23 Nov 1962'],
        'nationalities': ['Venezuela'],
        'identifications': [{'type': 'Cedula No.', 'number': '5892464', 'country': 'Venezuela'}],
        'addresses': [{'city': 'Caracas', 'country': 'Venezuela'}],
    },
    {
        'id': '7163',
        'type': 'entity',
        'name': 'FELIX B. MADURO S.A.',
        'addresses': [{'address_line1': 'Calle 30', 'city': 'Panama City', 'country': 'Panama'}],
    },
    {
        'id': '36',
        'type': 'entity',
        'name': 'AEROCARIBBEAN AIRLINES',
        'addresses': ['Havana, Cuba'],
    },
    {
        'id': '1001',
        'type': 'individual',
        'name': 'SMITH, John',
        'dates_of_birth': ['1970-05-12'],
        'nationalities': ['United Kingdom'],
        'identifications': [{'type': 'Passport', 'number': 'AB-123 456', 'country': 'UK'}],
    },
    {
        'id': '9001',
        'type': 'vessel',
        'name': 'OCEAN STAR',
        'identifications': [{'type': 'IMO', 'number': '9187629'}],
    },
]


@pytest.fixture
def sample_records():
    return copy.deepcopy(SAMPLE_RECORDS)


@pytest.fixture
def config(tmp_path):
    """Default configuration, independent of any config.yaml on disk"""
    ConfigManager.reset_instance()
    yield ConfigManager(str(tmp_path / "missing-config.yaml"))
    ConfigManager.reset_instance()


@pytest.fixture
def audit():
    return AuditLogger(logger_name='audit.tests')
