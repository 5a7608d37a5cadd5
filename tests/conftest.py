import httpx, pytest
from sparkdb.dispatcher import QueryDispatcher, DispatcherConfig
from sparkdb.keyspace import KeySpaceStore
from sparkdb.mode import ModePublisher
from sparkdb.shapes import LocalInterpreter

REMOTE_URL = "http://remote.test/api/query"


@pytest.fixture()
def store(tmp_path):
    return KeySpaceStore(str(tmp_path / 'local_store.db'))


@pytest.fixture()
def interpreter(store):
    return LocalInterpreter(store, strict=False)


@pytest.fixture()
def publisher():
    return ModePublisher()


def offline(request):
    raise httpx.ConnectError("connection refused", request=request)


@pytest.fixture()
def make_dispatcher(store, publisher):
    """Build a dispatcher whose HTTP traffic goes to the given MockTransport handler."""
    created = []

    def _make(handler=offline):
        client = httpx.Client(transport=httpx.MockTransport(handler))
        d = QueryDispatcher(DispatcherConfig(endpoint=REMOTE_URL, local_db=store.path),
                            store=store, publisher=publisher, client=client)
        created.append(client)
        return d

    yield _make
    for client in created:
        client.close()
