"""Wires the bus, broker and relay together from Config."""

from __future__ import annotations

import logging
from typing import Optional

from .broker import Broker
from .config import Config
from .escalation import FrameEscalationDelegate
from .media.capability import CapabilityProvider, DeviceCapabilityProvider, MediaConstraints
from .media.preview import FramePreview, PreviewWidget
from .media.tracks import SyntheticCapabilityProvider
from .messaging import MessageBus
from .relay import Relay
from .rtc.engine import AiortcPeerConnection, PeerConnectionFactory

logger = logging.getLogger(__name__)


def build_capability_provider() -> CapabilityProvider:
    if Config.CAMERA_SOURCE == "synthetic":
        width, height = Config.video_size()
        return SyntheticCapabilityProvider(width=width, height=height)
    return DeviceCapabilityProvider(
        Config.CAMERA_DEVICE,
        source_format=Config.CAMERA_FORMAT,
        video_size=Config.CAMERA_VIDEO_SIZE,
        framerate=Config.CAMERA_FRAMERATE,
    )


def build_connection_factory() -> PeerConnectionFactory:
    ice_servers = Config.ice_servers()

    def factory() -> AiortcPeerConnection:
        return AiortcPeerConnection(ice_servers=ice_servers)

    return factory


class PreviewRuntime:
    """One broker and the relay for the active tab, sharing a bus."""

    def __init__(
        self,
        *,
        provider: Optional[CapabilityProvider] = None,
        page_provider: Optional[CapabilityProvider] = None,
        connection_factory: Optional[PeerConnectionFactory] = None,
        preview: Optional[PreviewWidget] = None,
        page_origin: Optional[str] = None,
        constraints: Optional[MediaConstraints] = None,
        ice_restart_delay: Optional[float] = None,
    ) -> None:
        provider = provider or build_capability_provider()
        # The delegate runs page-side, where the user can actually be prompted.
        page_provider = page_provider or provider
        connection_factory = connection_factory or build_connection_factory()
        constraints = constraints or MediaConstraints(video=True, audio=Config.CAMERA_AUDIO)

        self.bus = MessageBus()
        self.preview = preview or FramePreview(quality=Config.PREVIEW_JPEG_QUALITY)
        self.broker = Broker(
            self.bus,
            provider,
            connection_factory,
            delegate_factory=lambda: FrameEscalationDelegate(page_provider, constraints),
            constraints=constraints,
            ice_restart_delay=Config.ICE_RESTART_DELAY if ice_restart_delay is None else ice_restart_delay,
        )
        self.relay = Relay(
            self.bus,
            connection_factory,
            self.preview,
            page_origin=page_origin or Config.PAGE_ORIGIN,
        )

    async def start(self) -> None:
        self.broker.start()
        self.relay.start()
        logger.info("Preview runtime started for %s", self.relay.page_origin)

    async def stop(self) -> None:
        await self.relay.close()
        await self.broker.close()
        logger.info("Preview runtime stopped")
