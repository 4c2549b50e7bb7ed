"""Service container — builds the anti-abuse object graph once.

The application root calls build_services() at startup and hands the
resulting AbuseDetector to whatever gates requests.  Nothing in this
package keeps module-level instances, so tests build as many isolated
graphs as they like.
"""

from dataclasses import dataclass

from antiabuse.audit import DEFAULT_AUDIT_URL, AuditStore
from antiabuse.backends import Backend, create_backend
from antiabuse.engine import AbuseDetector
from antiabuse.penalties import PenaltyManager
from antiabuse.score import AbuseScoreCalculator
from antiabuse.settings import SettingsProvider
from antiabuse.signals import ModelSwitchTracker, TestContentDetector


@dataclass
class Services:
    settings: SettingsProvider
    backend: Backend
    audit: AuditStore
    model_switch_tracker: ModelSwitchTracker
    test_content_detector: TestContentDetector
    score_calculator: AbuseScoreCalculator
    penalty_manager: PenaltyManager
    detector: AbuseDetector

    def close(self) -> None:
        self.backend.close()
        self.audit.close()


def build_services(settings: SettingsProvider | None = None, *,
                   backend: Backend | None = None,
                   redis_url: str | None = None,
                   audit: AuditStore | None = None,
                   audit_url: str = DEFAULT_AUDIT_URL,
                   backend_timeout: float = 0.5) -> Services:
    """Wire everything together.

    Pass ``backend``/``audit`` to inject prebuilt stores (tests); otherwise
    they are created from ``redis_url``/``audit_url``.
    """
    settings = settings or SettingsProvider()
    backend = backend or create_backend(
        redis_url, socket_timeout=backend_timeout, lock_timeout=backend_timeout,
    )
    audit = audit or AuditStore(audit_url, timeout=backend_timeout)

    tracker = ModelSwitchTracker(backend)
    content = TestContentDetector(backend)
    calculator = AbuseScoreCalculator(tracker, content)
    penalties = PenaltyManager(backend, audit, settings)
    detector = AbuseDetector(settings, tracker, content, calculator, penalties)

    return Services(
        settings=settings,
        backend=backend,
        audit=audit,
        model_switch_tracker=tracker,
        test_content_detector=content,
        score_calculator=calculator,
        penalty_manager=penalties,
        detector=detector,
    )
