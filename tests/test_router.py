import asyncio

from encoder_link.broadcast import Requester
from encoder_link.router import MessageRouter


class Recorder:
    def __init__(self) -> None:
        self.messages = []

    def send(self, message) -> None:
        self.messages.append(dict(message))


def test_dispatch_runs_each_key():
    router = MessageRouter()
    seen = []

    async def wifi(requester, value):
        seen.append(("wifi", value))
        requester.reply("wifi", {"ok": True})

    async def modems(requester, value):
        seen.append(("modems", value))

    router.register("wifi", wifi)
    router.register("modems", modems)
    sink = Recorder()

    async def scenario():
        tasks = router.dispatch(Requester(sink, 9), {"id": 9, "wifi": {"scan": 1}, "modems": {}, "other": 1})
        await asyncio.gather(*tasks)
        return len(tasks)

    assert asyncio.run(scenario()) == 2
    assert sorted(seen) == [("modems", {}), ("wifi", {"scan": 1})]
    assert sink.messages == [{"wifi": {"ok": True}, "id": 9}]


def test_handler_errors_do_not_escape():
    router = MessageRouter()

    async def broken(requester, value):
        raise RuntimeError("boom")

    router.register("wifi", broken)

    async def scenario():
        tasks = router.dispatch(Requester(Recorder()), {"wifi": {}})
        await asyncio.gather(*tasks)
        return tasks[0]

    task = asyncio.run(scenario())
    assert task.exception() is None


def test_slow_handler_does_not_block_others_and_is_cancelled_on_close():
    router = MessageRouter()
    started = []
    finished = []

    async def slow(requester, value):
        started.append(value)
        await asyncio.sleep(60)

    async def fast(requester, value):
        finished.append(value)

    router.register("modems", slow)
    router.register("wifi", fast)

    async def scenario():
        router.dispatch(Requester(Recorder()), {"modems": "scan"})
        fast_tasks = router.dispatch(Requester(Recorder()), {"wifi": "list"})
        await asyncio.gather(*fast_tasks)
        await router.aclose()

    asyncio.run(scenario())
    assert started == ["scan"]
    assert finished == ["list"]
