"""In-memory helpdesk collaborators for workflow execution."""

from ..services import ServiceLayer
from .failures import FailureConfig
from .services import InMemoryDirectory, InMemoryEntityStore, RecordingNotifier, SimulatedClassifier
from .state import HelpdeskState


def create_simulator(
    failure_config: FailureConfig | None = None,
    classifier: SimulatedClassifier | None = None,
    state: HelpdeskState | None = None,
) -> ServiceLayer:
    """Create a fresh simulator with all collaborators wired to one shared state."""
    state = state or HelpdeskState()

    return ServiceLayer(
        entities=InMemoryEntityStore(state),
        directory=InMemoryDirectory(state),
        classifier=classifier or SimulatedClassifier(),
        notifier=RecordingNotifier(state),
        state=state,
        failure_config=failure_config,
    )
