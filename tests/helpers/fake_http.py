import json


class FakeResponse:
    """
    Minimal stand-in for aiohttp.ClientResponse used as `async with session.get(...)`.
    """
    def __init__(self, status=200, body=None, headers=None, raw=None):
        self.status = status
        self._body = body
        self._raw = raw
        self.headers = headers or {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def json(self, content_type=None):
        if self._raw is not None:
            return json.loads(self._raw)  # may raise ValueError, like aiohttp
        return self._body

    async def text(self):
        if self._raw is not None:
            return self._raw
        return json.dumps(self._body)


class _Raising:
    def __init__(self, exc):
        self.exc = exc

    async def __aenter__(self):
        raise self.exc

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """
    Plays back scripted responses (or exceptions) in order and records calls.
    """
    def __init__(self, *script):
        self.script = list(script)
        self.calls = []
        self.closed = False

    def get(self, url, params=None, headers=None):
        self.calls.append({"url": url, "params": dict(params or {}), "headers": dict(headers or {})})
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            return _Raising(item)
        return item

    async def close(self):
        self.closed = True


class RecordingSleep:
    """Injected in place of asyncio.sleep; records requested waits, never blocks."""
    def __init__(self):
        self.waits = []

    async def __call__(self, s):
        self.waits.append(s)
