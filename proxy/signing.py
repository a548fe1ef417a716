import hashlib
import json
import re
import time
from typing import Any, Dict, Optional
from urllib.parse import quote

from device_session import DeviceIdentity

UPSTREAM_ORIGIN = "https://hailuoai.com"

FAKE_HEADERS: Dict[str, str] = {
    "Accept": "*/*",
    # Only codings httpx decodes without optional extras.
    "Accept-Encoding": "gzip, deflate",
    "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
    "Cache-Control": "no-cache",
    "Origin": UPSTREAM_ORIGIN,
    "Pragma": "no-cache",
    "Priority": "u=1, i",
    "Sec-Ch-Ua": '"Chromium";v="124", "Google Chrome";v="124", "Not-A.Brand";v="99"',
    "Sec-Ch-Ua-Mobile": "?0",
    "Sec-Ch-Ua-Platform": '"Windows"',
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
    ),
}

# Key order is part of the signed string; do not reorder.
FAKE_USER_DATA: Dict[str, Any] = {
    "device_platform": "web",
    "app_id": "3001",
    "uuid": None,
    "device_id": None,
    "version_code": "21200",
    "os_name": "Windows",
    "browser_name": "chrome",
    "server_version": "101",
    "device_memory": 8,
    "cpu_core_num": 16,
    "browser_language": "zh-CN",
    "browser_platform": "Win32",
    "screen_width": 2560,
    "screen_height": 1440,
    "unix": None,
}

_SIGN_SALT = "ooui"
_LINE_BREAKS_RE = re.compile(r"(\r\n|\n|\r)")


def md5(data: Any) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.md5(data).hexdigest()


def encode_uri_component(value: str) -> str:
    # Same unreserved set as JavaScript's encodeURIComponent.
    return quote(value, safe="-_.!~*'()")


def unix_millis() -> str:
    # Whole seconds expressed in milliseconds, as the web client sends it.
    return str(int(time.time()) * 1000)


def build_query(identity: DeviceIdentity, unix: str) -> str:
    user_data = dict(FAKE_USER_DATA)
    user_data["uuid"] = identity.user_id
    user_data["device_id"] = identity.device_id or None
    user_data["unix"] = unix
    return "&".join(f"{k}={v}" for k, v in user_data.items() if v is not None)


def compact_json(data: Any) -> str:
    return json.dumps(data if data is not None else {}, ensure_ascii=False, separators=(",", ":"))


def sign_unary(full_uri: str, data: Any, unix: str) -> str:
    return md5(f"{encode_uri_component(full_uri)}_{compact_json(data)}{md5(unix)}{_SIGN_SALT}")


def stream_body_digest(data: Dict[str, Any]) -> str:
    """Digest of the multipart form fields the upstream verifies for chat turns."""
    character_id = str(data.get("characterID") or "")
    chat_id = str(data.get("chatID") or "")
    msg_content = data.get("msgContent")
    if msg_content:
        return (
            md5(character_id)
            + md5(_LINE_BREAKS_RE.sub("", str(msg_content)))
            + md5(chat_id)
            + md5(str(data.get("form") or ""))
        )
    voice = data.get("voiceBytes")
    if voice:
        return md5(character_id) + md5(chat_id) + md5(bytes(voice[:1024]))
    return ""


def sign_stream(path_with_query: str, data: Dict[str, Any], unix: str) -> str:
    return md5(f"{encode_uri_component(path_with_query)}_{stream_body_digest(data)}{md5(unix)}{_SIGN_SALT}")


def join_uri(uri: str, query: str) -> str:
    return f"{uri}{'&' if '?' in uri else '?'}{query}"


def build_headers(token: str, yy: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    headers: Dict[str, str] = {"Referer": f"{UPSTREAM_ORIGIN}/", "Token": token}
    headers.update(FAKE_HEADERS)
    if extra:
        headers.update(extra)
    headers["Yy"] = yy
    return headers
