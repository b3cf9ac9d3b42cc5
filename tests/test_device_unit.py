"""Unit tests for User-Agent parsing and IP geolocation."""

import httpx
import pytest

from authsession.service.device import IPLocator, describe_device, parse_user_agent

CHROME_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
EDGE_WINDOWS = CHROME_WINDOWS + " Edg/120.0.2210.91"
SAFARI_IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
SAFARI_IPAD = (
    "Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
SAFARI_MAC = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.1 Safari/605.1.15"
)
CHROME_ANDROID_PHONE = (
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.6099.43 Mobile Safari/537.36"
)
CHROME_ANDROID_TABLET = (
    "Mozilla/5.0 (Linux; Android 13; SM-X700) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
FIREFOX_LINUX = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"


@pytest.mark.parametrize(
    "user_agent,expected",
    [
        (CHROME_WINDOWS, ("Chrome 120.0.0.0", "Windows 10.0", "Desktop")),
        (EDGE_WINDOWS, ("Edge 120.0.2210.91", "Windows 10.0", "Desktop")),
        (SAFARI_IPHONE, ("Safari 17.0", "iOS 17.0", "Mobile")),
        (SAFARI_IPAD, ("Safari 17.0", "iOS 17.0", "Tablet")),
        (SAFARI_MAC, ("Safari 17.1", "Mac OS 10.15.7", "Desktop")),
        (CHROME_ANDROID_PHONE, ("Chrome 120.0.6099.43", "Android 14", "Mobile")),
        (CHROME_ANDROID_TABLET, ("Chrome 120.0.0.0", "Android 13", "Tablet")),
        (FIREFOX_LINUX, ("Firefox 121.0", "Linux", "Desktop")),
    ],
)
def test_parse_user_agent(user_agent, expected):
    assert parse_user_agent(user_agent) == expected


def test_missing_user_agent():
    assert parse_user_agent(None) == ("Unknown", "Unknown", "Desktop")
    assert parse_user_agent("") == ("Unknown", "Unknown", "Desktop")


def test_unrecognized_user_agent():
    assert parse_user_agent("SomeBot") == ("Unknown", "Unknown", "Desktop")


def _locator(handler):
    return IPLocator(transport=httpx.MockTransport(handler))


async def test_locate_public_ip():
    seen = []

    def handler(request):
        seen.append(request.url)
        return httpx.Response(
            200, json={"status": "success", "country": "Germany", "city": "Berlin"}
        )

    assert await _locator(handler).locate("8.8.8.8") == "Berlin, Germany"
    assert seen[0].path == "/json/8.8.8.8"


async def test_private_ip_is_not_looked_up():
    def handler(request):
        raise AssertionError("private addresses must not be sent out")

    locator = _locator(handler)
    assert await locator.locate("192.168.1.10") == "Unknown"
    assert await locator.locate("127.0.0.1") == "Unknown"
    assert await locator.locate("not-an-ip") == "Unknown"
    assert await locator.locate("") == "Unknown"


async def test_failed_lookup_is_unknown():
    def fail_status(request):
        return httpx.Response(200, json={"status": "fail", "message": "reserved range"})

    def server_error(request):
        return httpx.Response(503)

    def network_error(request):
        raise httpx.ConnectError("unreachable", request=request)

    for handler in (fail_status, server_error, network_error):
        assert await _locator(handler).locate("8.8.8.8") == "Unknown"


async def test_describe_device():
    def handler(request):
        return httpx.Response(
            200, json={"status": "success", "country": "Japan", "city": "Tokyo"}
        )

    device = await describe_device(SAFARI_IPHONE, "1.1.1.1", _locator(handler))

    assert device.browser == "Safari 17.0"
    assert device.device_type == "Mobile"
    assert device.ip_address == "1.1.1.1"
    assert device.location == "Tokyo, Japan"


async def test_describe_device_without_locator():
    device = await describe_device(CHROME_WINDOWS, "8.8.8.8")

    assert device.location == "Unknown"
    assert device.os == "Windows 10.0"
