import pytest


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings):
    settings.USE_HTTP_ADAPTERS = False
    settings.ODF_API_CLIENT_ID = ""
    settings.HTTP_RETRY_BACKOFF_BASE = 0.0
