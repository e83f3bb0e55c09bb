from providerbridge.adapters.proxy.cors import (
    DENIED_ORIGIN_VALUE,
    STATIC_CORS_HEADERS,
    cors_headers,
    evaluate_origin,
)


def test_allow_listed_remote_origin_is_echoed():
    decision = evaluate_origin("https://api2.cursor.sh")
    assert decision.allowed is True
    assert decision.allow_origin == "https://api2.cursor.sh"


def test_webview_origin_prefix_is_allowed():
    origin = "vscode-webview://1a2b3c4d"
    decision = evaluate_origin(origin)
    assert decision.allowed is True
    assert decision.allow_origin == origin


def test_unknown_origin_gets_null_instead_of_echo():
    decision = evaluate_origin("https://evil.example.com")
    assert decision.allowed is False
    assert decision.allow_origin == DENIED_ORIGIN_VALUE
    assert cors_headers(decision)["Access-Control-Allow-Origin"] == "null"


def test_lookalike_origin_is_denied():
    assert evaluate_origin("https://api2.cursor.sh.evil.com").allowed is False
    assert evaluate_origin("http://api2.cursor.sh").allowed is False


def test_missing_origin_is_denied():
    assert evaluate_origin(None).allow_origin == "null"
    assert evaluate_origin("").allowed is False


def test_static_headers_are_always_present():
    headers = cors_headers(evaluate_origin("https://api3.cursor.sh"))
    for name, value in STATIC_CORS_HEADERS.items():
        assert headers[name] == value
    assert headers["Access-Control-Allow-Methods"] == "GET, POST, OPTIONS"
    assert headers["Access-Control-Max-Age"] == "86400"
