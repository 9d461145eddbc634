from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from iamcore.clock import Clock, utc_now
from iamcore.config import Settings
from iamcore.logging import get_logger
from iamcore.service.errors import NotFoundError, TrustedDeviceLimitError
from iamcore.storage.models import Device

logger = get_logger(__name__)

FIRST_DEVICE_SCORE = 80
NEW_DEVICE_SCORE = 50
TRUSTED_MIN_SCORE = 80
UNTRUSTED_MAX_SCORE = 30
SUSPICIOUS_BELOW = 20


@dataclass(frozen=True)
class DeviceInfo:
    device_type: str
    os: str
    browser: str

    @property
    def device_name(self) -> str:
        return f"{self.os} {self.browser} ({self.device_type})"


def parse_user_agent(user_agent: Optional[str]) -> DeviceInfo:
    """Coarse device classification from a User-Agent header."""

    if not user_agent:
        return DeviceInfo("unknown", "Unknown", "Unknown")
    ua = user_agent.lower()

    if "ipad" in ua or "tablet" in ua:
        device_type = "tablet"
    elif "mobile" in ua or "android" in ua or "iphone" in ua:
        device_type = "mobile"
    else:
        device_type = "desktop"

    # Mobile platforms first: Android UAs mention Linux, iOS UAs mention Mac OS X
    if "android" in ua:
        os_name = "Android"
    elif "iphone" in ua or "ipad" in ua or "ios" in ua:
        os_name = "iOS"
    elif "windows" in ua:
        os_name = "Windows"
    elif "mac os" in ua or "macintosh" in ua:
        os_name = "macOS"
    elif "linux" in ua:
        os_name = "Linux"
    else:
        os_name = "Unknown"

    # Edge and Chrome both advertise Safari; Edge also advertises Chrome
    if "edg" in ua:
        browser = "Edge"
    elif "firefox" in ua or "fxios" in ua:
        browser = "Firefox"
    elif "chrome" in ua or "crios" in ua:
        browser = "Chrome"
    elif "safari" in ua:
        browser = "Safari"
    else:
        browser = "Unknown"

    return DeviceInfo(device_type, os_name, browser)


class DeviceTrustEngine:
    """Tracks the devices an account signs in from and how far to trust them."""

    def __init__(self, store, settings: Settings, *, clock: Clock = utc_now) -> None:
        self.store = store
        self.salt = settings.device_fingerprint_salt
        self.max_trusted = settings.max_trusted_devices
        self.inactivity = timedelta(days=settings.device_inactivity_days)
        self._clock = clock

    def fingerprint(self, user_agent: Optional[str], ip_addr: Optional[str]) -> str:
        raw = "\x1f".join((user_agent or "", ip_addr or "", self.salt))
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def _require(self, account_id: str, fingerprint: str) -> Device:
        device = self.store.get_device(account_id, fingerprint)
        if device is None:
            raise NotFoundError("device not found", detail={"fingerprint": fingerprint})
        return device

    def _score_on_return(self, device: Device, info: DeviceInfo) -> int:
        if device.blocked:
            return 0
        score = device.trust_score
        if device.first_seen < self._clock() - timedelta(days=30):
            score += 10
        if info.device_type == "mobile":
            score += 5
        return min(100, max(0, score))

    def register_or_update(
        self, account_id: str, user_agent: Optional[str], ip_addr: Optional[str]
    ) -> Device:
        now = self._clock()
        fingerprint = self.fingerprint(user_agent, ip_addr)
        info = parse_user_agent(user_agent)
        device = self.store.get_device(account_id, fingerprint)
        if device is not None:
            device.trust_score = self._score_on_return(device, info)
            device.last_seen = now
            device.ip_addr = ip_addr
            device.user_agent = user_agent
            device.login_count += 1
            return self.store.save_device(device)

        first = not self.store.list_devices(account_id)
        device = Device(
            id=str(uuid.uuid4()),
            account_id=account_id,
            fingerprint=fingerprint,
            device_type=info.device_type,
            os=info.os,
            browser=info.browser,
            device_name=info.device_name,
            user_agent=user_agent,
            ip_addr=ip_addr,
            first_seen=now,
            last_seen=now,
            trusted=first,
            trust_score=FIRST_DEVICE_SCORE if first else NEW_DEVICE_SCORE,
        )
        logger.info(
            "device_registered",
            account_id=account_id,
            device_id=device.id,
            trusted=first,
            device_name=device.device_name,
        )
        return self.store.save_device(device)

    def is_trusted(self, account_id: str, fingerprint: str) -> bool:
        device = self.store.get_device(account_id, fingerprint)
        return bool(device and device.trusted and not device.blocked)

    def trust(self, account_id: str, fingerprint: str) -> Device:
        device = self._require(account_id, fingerprint)
        if device.trusted:
            return device
        active_since = self._clock() - self.inactivity
        if self.store.count_trusted_devices(account_id, seen_since=active_since) >= self.max_trusted:
            raise TrustedDeviceLimitError(self.max_trusted)
        device.trusted = True
        device.blocked = False
        device.trust_score = max(device.trust_score, TRUSTED_MIN_SCORE)
        logger.info("device_trusted", account_id=account_id, device_id=device.id)
        return self.store.save_device(device)

    def revoke_trust(self, account_id: str, fingerprint: str) -> Device:
        device = self._require(account_id, fingerprint)
        device.trusted = False
        device.trust_score = min(device.trust_score, UNTRUSTED_MAX_SCORE)
        logger.info("device_trust_revoked", account_id=account_id, device_id=device.id)
        return self.store.save_device(device)

    def block(self, account_id: str, fingerprint: str) -> Device:
        device = self._require(account_id, fingerprint)
        device.blocked = True
        device.trusted = False
        device.trust_score = 0
        logger.warning("device_blocked", account_id=account_id, device_id=device.id)
        return self.store.save_device(device)

    def unblock(self, account_id: str, fingerprint: str) -> Device:
        device = self._require(account_id, fingerprint)
        device.blocked = False
        device.trust_score = max(device.trust_score, SUSPICIOUS_BELOW)
        logger.info("device_unblocked", account_id=account_id, device_id=device.id)
        return self.store.save_device(device)

    def is_blocked(self, account_id: str, fingerprint: str) -> bool:
        device = self.store.get_device(account_id, fingerprint)
        return bool(device and device.blocked)

    def list_devices(self, account_id: str) -> List[Device]:
        devices = self.store.list_devices(account_id)
        return sorted(devices, key=lambda d: d.last_seen, reverse=True)

    def is_suspicious(self, account_id: str, fingerprint: str, ip_addr: Optional[str]) -> bool:
        device = self.store.get_device(account_id, fingerprint)
        if device is None:
            if not ip_addr:
                return True
            return not self.store.has_device_with_ip(account_id, ip_addr)
        return device.blocked or device.trust_score < SUSPICIOUS_BELOW
