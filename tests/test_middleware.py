import asyncio

from ekb.api.middleware import RequestIDMiddleware
from ekb.services.logger_config import request_id_var, setup_logging


def test_request_id_is_stamped_on_log_records(tmp_path):
    log_file = tmp_path / "ekb.log"
    logger = setup_logging("INFO", str(log_file))
    sent = []

    async def app(scope, receive, send):
        logger.info("inside request")
        await send({"type": "http.response.start", "status": 204, "headers": []})
        await send({"type": "http.response.body", "body": b""})

    async def receive():
        return {"type": "http.request"}

    async def send(message):
        sent.append(message)

    scope = {"type": "http", "headers": [(b"x-request-id", b"req-42")]}
    asyncio.run(RequestIDMiddleware(app)(scope, receive, send))
    logger.info("after request")
    for handler in logger.handlers:
        handler.flush()

    lines = log_file.read_text(encoding="utf-8").splitlines()
    assert any("[req-42]" in line and "inside request" in line for line in lines)
    assert any("[-]" in line and "after request" in line for line in lines)
    assert (b"x-request-id", b"req-42") in sent[0]["headers"]
    assert request_id_var.get() == "-"
    setup_logging("INFO", "")
