import structlog

from pricewatch.main import configure_logging

def test_configure_logging_console_and_json(capsys):
    configure_logging("DEBUG", json_output=False)
    structlog.get_logger("t").info("hello_console", n=1)
    assert "hello_console" in capsys.readouterr().out

    configure_logging("WARNING", json_output=True)
    log = structlog.get_logger("t")
    log.info("filtered_out")
    log.warning("hello_json", n=2)
    out = capsys.readouterr().out
    assert "filtered_out" not in out
    assert '"event": "hello_json"' in out
