import pytest

from tests.mocks.mock_transcription_client import make_png


@pytest.fixture
def images():
    """Distinct PNGs, one per index."""
    return [make_png(width=i + 1) for i in range(10)]
