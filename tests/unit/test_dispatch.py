"""
Unit tests for the dispatch layer.

Tests cover:
- Typed method identifiers
- Method table derivation and exhaustiveness checks
- Malformed request rejection (halts before any call runs)
- Sequential execution and per-call error isolation
- Writes through Type/set, including inline idRequired failures
"""

import pytest

from syncdb.jmap_server.api.dispatch import (
    ERROR_NOT_JSON,
    ERROR_NOT_REQUEST,
    Dispatcher,
    MethodId,
    MethodTableError,
    RequestError,
    Verb,
)
from syncdb.jmap_server.engine import SyncEngine
from syncdb.jmap_server.schema.mail import build_mail_registry
from syncdb.jmap_server.store import InMemoryRecordStore


@pytest.fixture
async def engine():
    """Create an engine over a provisioned in-memory store."""
    registry = build_mail_registry()
    store = InMemoryRecordStore(account_id="acc_1")
    await store.provision(registry)
    return SyncEngine("acc_1", store, registry)


@pytest.fixture
def dispatcher(engine):
    return Dispatcher(engine, engine.registry)


class TestMethodId:
    """Tests for MethodId."""

    def test_parse(self):
        """Type/verb names parse into typed ids."""
        assert MethodId.parse("Email/get") == MethodId("Email", Verb.GET)
        assert MethodId.parse("Thread/changes") == MethodId("Thread", Verb.CHANGES)
        assert MethodId.parse("Email/set") == MethodId("Email", Verb.SET)

    @pytest.mark.parametrize("name", ["Email", "Email/addRecords", "/get", "Email/get/x", ""])
    def test_parse_unknown(self, name):
        """Anything that is not Type/<known verb> parses to None."""
        assert MethodId.parse(name) is None

    def test_name(self):
        """name renders the wire method name."""
        assert MethodId("Mailbox", Verb.CHANGES).name == "Mailbox/changes"


class TestMethodTable:
    """Tests for method table derivation."""

    def test_derived_from_registry(self, dispatcher):
        """Record types get get+changes+set, aggregates get only get."""
        assert dispatcher.method_names == [
            "Email/changes",
            "Email/get",
            "Email/set",
            "Mailbox/changes",
            "Mailbox/get",
            "Mailbox/set",
            "Thread/get",
        ]

    @pytest.mark.parametrize("verb", [Verb.CHANGES, Verb.SET])
    def test_register_undeclared_raises(self, dispatcher, verb):
        """Binding a handler to an undeclared id is a table error."""
        async def handler(args):
            return True, {}

        with pytest.raises(MethodTableError, match=f"Thread/{verb.value}"):
            dispatcher.register(MethodId("Thread", verb), handler)

    def test_missing_handler_detected(self, dispatcher):
        """check_method_table reports declared ids without a handler."""
        del dispatcher._handlers[MethodId("Email", Verb.GET)]

        with pytest.raises(MethodTableError, match="no handler for: Email/get"):
            dispatcher.check_method_table()

    @pytest.mark.asyncio
    async def test_register_rebinds(self, dispatcher):
        """A declared id can be rebound to a new handler."""
        async def handler(args):
            return True, {"echo": args}

        dispatcher.register(MethodId("Mailbox", Verb.GET), handler)
        responses = await dispatcher.process(
            {"methodCalls": [["Mailbox/get", {"x": 1}, "c1"]]}
        )

        assert responses == [["Mailbox/get", {"echo": {"x": 1}}, "c1"]]


class TestMalformedRequests:
    """Tests for request-level rejection."""

    @pytest.mark.asyncio
    async def test_empty_request(self, dispatcher):
        """A null request is notJSON."""
        with pytest.raises(RequestError) as exc_info:
            await dispatcher.process(None)

        assert exc_info.value.type == ERROR_NOT_JSON
        assert exc_info.value.status == 400

    @pytest.mark.asyncio
    @pytest.mark.parametrize("request_body", [[["Email/get", {}, "c1"]], [], "methodCalls", 3])
    async def test_non_object_request(self, dispatcher, request_body):
        """Parsed JSON that is not an object is notRequest."""
        with pytest.raises(RequestError) as exc_info:
            await dispatcher.process(request_body)

        assert exc_info.value.type == ERROR_NOT_REQUEST
        assert exc_info.value.status == 400

    @pytest.mark.asyncio
    @pytest.mark.parametrize("request_body", [{}, {"methodCalls": "Email/get"}])
    async def test_missing_method_calls(self, dispatcher, request_body):
        """Absent or non-array methodCalls is notRequest."""
        with pytest.raises(RequestError) as exc_info:
            await dispatcher.process(request_body)

        assert exc_info.value.type == ERROR_NOT_REQUEST

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "invocation",
        [
            ["Email/get", {}],
            ["Email/get", {}, "c1", "extra"],
            [1, {}, "c1"],
            ["Email/get", [], "c1"],
            ["Email/get", {}, 7],
            "Email/get",
        ],
    )
    async def test_bad_invocation_shape(self, dispatcher, invocation):
        """Any invocation that is not [str, object, str] is notRequest."""
        with pytest.raises(RequestError) as exc_info:
            await dispatcher.process({"methodCalls": [invocation]})

        assert exc_info.value.type == ERROR_NOT_REQUEST

    @pytest.mark.asyncio
    async def test_malformed_request_runs_nothing(self, dispatcher):
        """A bad invocation anywhere halts the request before any call runs."""
        calls = []

        async def handler(args):
            calls.append(args)
            return True, {}

        dispatcher.register(MethodId("Mailbox", Verb.GET), handler)

        with pytest.raises(RequestError):
            await dispatcher.process(
                {"methodCalls": [["Mailbox/get", {}, "c1"], ["Mailbox/get", {}]]}
            )

        assert calls == []

    def test_request_error_to_dict(self):
        """RequestError serializes type, status and detail."""
        error = RequestError(ERROR_NOT_REQUEST, detail="bad")
        assert error.to_dict() == {"type": ERROR_NOT_REQUEST, "status": 400, "detail": "bad"}


class TestProcess:
    """Tests for sequential processing."""

    @pytest.mark.asyncio
    async def test_empty_batch(self, dispatcher):
        """An empty batch yields an empty response."""
        assert await dispatcher.process({"methodCalls": []}) == []

    @pytest.mark.asyncio
    async def test_unknown_method_isolated(self, dispatcher):
        """Unknown methods fail inline without affecting siblings."""
        responses = await dispatcher.process(
            {
                "methodCalls": [
                    ["Email/addRecords", {}, "c1"],
                    ["Email/get", {"ids": []}, "c2"],
                    ["Contact/get", {}, "c3"],
                ]
            }
        )

        assert responses[0] == ["error", {"type": "unknownMethod"}, "c1"]
        assert responses[1][0] == "Email/get"
        assert responses[1][2] == "c2"
        assert responses[2] == ["error", {"type": "unknownMethod"}, "c3"]

    @pytest.mark.asyncio
    async def test_method_error_reported_inline(self, dispatcher):
        """Engine errors become error entries labelled with their type."""
        responses = await dispatcher.process(
            {
                "methodCalls": [
                    ["Email/changes", {"sinceState": "abc"}, "c1"],
                    ["Email/changes", {"sinceState": "0"}, "c2"],
                ]
            }
        )

        assert responses[0][0] == "error"
        assert responses[0][1]["type"] == "invalidArguments"
        assert responses[1][0] == "Email/changes"
        assert responses[1][1]["newState"] == "0"

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_server_fail(self, dispatcher):
        """A crashing handler reports serverFail and siblings still run."""
        async def handler(args):
            raise RuntimeError("disk on fire")

        dispatcher.register(MethodId("Mailbox", Verb.GET), handler)
        responses = await dispatcher.process(
            {
                "methodCalls": [
                    ["Mailbox/get", {}, "c1"],
                    ["Email/get", {"ids": []}, "c2"],
                ]
            }
        )

        assert responses[0] == [
            "error",
            {"type": "serverFail", "description": "disk on fire"},
            "c1",
        ]
        assert responses[1][0] == "Email/get"

    @pytest.mark.asyncio
    async def test_calls_run_in_order(self, dispatcher):
        """Invocations run one at a time, in request order."""
        order = []

        def recorder(tag):
            async def handler(args):
                order.append(tag)
                return True, {"tag": tag}

            return handler

        dispatcher.register(MethodId("Mailbox", Verb.GET), recorder("mailbox"))
        dispatcher.register(MethodId("Thread", Verb.GET), recorder("thread"))

        responses = await dispatcher.process(
            {
                "methodCalls": [
                    ["Thread/get", {}, "a"],
                    ["Mailbox/get", {}, "b"],
                    ["Thread/get", {}, "c"],
                ]
            }
        )

        assert order == ["thread", "mailbox", "thread"]
        assert [r[2] for r in responses] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_handler_reported_failure(self, dispatcher):
        """A (False, payload) result is labelled error."""
        async def handler(args):
            return False, {"type": "forbidden"}

        dispatcher.register(MethodId("Mailbox", Verb.GET), handler)
        responses = await dispatcher.process({"methodCalls": [["Mailbox/get", {}, "c1"]]})

        assert responses == [["error", {"type": "forbidden"}, "c1"]]


class TestSet:
    """Tests for writes routed through Type/set."""

    @pytest.mark.asyncio
    async def test_set_then_changes(self, dispatcher):
        """Writes made by set show up in a following changes call."""
        responses = await dispatcher.process(
            {
                "methodCalls": [
                    ["Email/set", {"create": [{"id": "e1", "subject": "Hi"}]}, "c1"],
                    ["Email/changes", {"sinceState": "0"}, "c2"],
                ]
            }
        )

        assert responses[0] == [
            "Email/set",
            {
                "accountId": "acc_1",
                "oldState": "0",
                "newState": "1",
                "created": ["e1"],
                "updated": [],
                "destroyed": [],
            },
            "c1",
        ]
        assert responses[1][1]["created"] == ["e1"]

    @pytest.mark.asyncio
    async def test_id_required_reported_inline(self, dispatcher):
        """A record without an id fails its own call only, writing nothing."""
        responses = await dispatcher.process(
            {
                "methodCalls": [
                    ["Email/set", {"create": [{"id": "e1"}, {"subject": "no id"}]}, "c1"],
                    ["Mailbox/set", {"create": [{"id": "m1", "name": "Inbox"}]}, "c2"],
                    ["Email/get", {"ids": ["e1"]}, "c3"],
                ]
            }
        )

        assert responses[0][0] == "error"
        assert responses[0][1]["type"] == "idRequired"
        assert responses[0][2] == "c1"
        assert responses[1][0] == "Mailbox/set"
        assert responses[1][1]["created"] == ["m1"]
        assert responses[2][1]["notFound"] == ["e1"]

    @pytest.mark.asyncio
    async def test_update_and_destroy(self, dispatcher):
        """update reports existing ids; destroy skips unknown ids."""
        await dispatcher.process(
            {"methodCalls": [["Email/set", {"create": [{"id": "e1"}, {"id": "e2"}]}, "c1"]]}
        )

        responses = await dispatcher.process(
            {
                "methodCalls": [
                    [
                        "Email/set",
                        {
                            "update": [{"id": "e1", "subject": "Edited"}],
                            "destroy": ["e2", "missing"],
                        },
                        "c2",
                    ]
                ]
            }
        )

        result = responses[0][1]
        assert (result["oldState"], result["newState"]) == ("2", "4")
        assert result["created"] == []
        assert result["updated"] == ["e1"]
        assert result["destroyed"] == ["e2"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "args,error_type",
        [
            ({"create": {"id": "e1"}}, "invalidArguments"),
            ({"destroy": "e1"}, "invalidArguments"),
            ({"destroy": [""]}, "idRequired"),
            ({"create": [{"id": "e1", "bogus": 1}]}, "invalidProperties"),
            ({"accountId": "acc_2", "create": [{"id": "e1"}]}, "accountNotFound"),
        ],
    )
    async def test_set_errors(self, dispatcher, args, error_type):
        """Bad set arguments fail inline with their error type."""
        responses = await dispatcher.process({"methodCalls": [["Email/set", args, "c1"]]})

        assert responses[0][0] == "error"
        assert responses[0][1]["type"] == error_type
        assert responses[0][2] == "c1"
