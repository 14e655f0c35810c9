"""Wire stores, providers and services together from a SaasConfig."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from apscheduler.schedulers.base import BaseScheduler

from scripts.saasmgmt.config import SaasConfig
from scripts.saasmgmt.connections import ConnectionStore
from scripts.saasmgmt.correlation import CrossPlatformCorrelator
from scripts.saasmgmt.credentials import CredentialsService, CredentialStore
from scripts.saasmgmt.crypto import CredentialCipher
from scripts.saasmgmt.dashboard import DashboardService
from scripts.saasmgmt.db import Database
from scripts.saasmgmt.providers import get_provider
from scripts.saasmgmt.scheduler import SyncScheduler
from scripts.saasmgmt.smart_connect import SmartConnectService
from scripts.saasmgmt.sync_runner import SyncRunner


@dataclass
class Services:
    credentials: CredentialsService
    connections: ConnectionStore
    smart_connect: SmartConnectService
    sync_runner: SyncRunner
    correlator: CrossPlatformCorrelator
    dashboard: DashboardService
    scheduler: Optional[SyncScheduler] = None


def build_services(
    config: SaasConfig,
    db: Database,
    scheduler: Optional[BaseScheduler] = None,
) -> Services:
    """Build the service graph.

    Passing an APScheduler instance enables job management: connects
    schedule syncs and disconnects cancel them.
    """
    cipher = CredentialCipher(config.encryption)
    connections = ConnectionStore(db, cipher)
    credentials = CredentialsService(CredentialStore(db), cipher)

    def provider_factory(app_type: str):
        return get_provider(app_type, config, db, connections)

    runner = SyncRunner(credentials, connections, provider_factory)
    correlator = CrossPlatformCorrelator(db)
    sync_scheduler = (
        SyncScheduler(config.scheduler, runner, correlator, connections, scheduler)
        if scheduler is not None
        else None
    )
    smart_connect = SmartConnectService(
        credentials,
        connections,
        provider_factory,
        config.oauth,
        state_key=config.encryption.key,
        scheduler=sync_scheduler,
    )
    credentials.on_saved = smart_connect.sync_credentials_to_connection

    return Services(
        credentials=credentials,
        connections=connections,
        smart_connect=smart_connect,
        sync_runner=runner,
        correlator=correlator,
        dashboard=DashboardService(db, connections),
        scheduler=sync_scheduler,
    )
