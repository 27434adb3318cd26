import pytest
from unittest.mock import AsyncMock, patch


@pytest.fixture
def mock_kiq():
    with patch("jobs.worker.dispatch_notification_task.kiq", new_callable=AsyncMock) as mock:
        yield mock
