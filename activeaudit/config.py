"""Configuration management for the webcam preview extension runtime."""

from __future__ import annotations

import logging
import os
from typing import Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()


def _parse_float(name: str, default: float) -> Tuple[float, bool]:
	"""Return environment variable as float when possible, falling back to default."""
	value = os.getenv(name)
	if value is None or value.strip() == '':
		return default, True
	try:
		return float(value), False
	except ValueError:
		logger.warning('Ignoring invalid float for %s: %s', name, value)
		return default, True


def _parse_int(name: str, default: int) -> Tuple[int, bool]:
	"""Return environment variable as int when possible, falling back to default."""
	value = os.getenv(name)
	if value is None or value.strip() == '':
		return default, True
	try:
		return int(value), False
	except ValueError:
		logger.warning('Ignoring invalid integer for %s: %s', name, value)
		return default, True


def _parse_bool(name: str, default: bool) -> bool:
	value = os.getenv(name)
	if value is None or value.strip() == '':
		return default
	return value.strip().lower() in {'true', '1', 'yes', 'on'}


class Config:
	"""Centralized configuration for capture, signaling and the page API."""

	# Only page messages posted from this origin are accepted by the relay.
	PAGE_ORIGIN: str = os.getenv('PAGE_ORIGIN', 'http://localhost:8100').strip().rstrip('/')

	_PREVIEW_API_PORT, _ = _parse_int('PREVIEW_API_PORT', 8100)
	PREVIEW_API_PORT: int = _PREVIEW_API_PORT

	CAMERA_SOURCE: str = os.getenv('CAMERA_SOURCE', 'device').strip().lower() or 'device'
	if CAMERA_SOURCE not in {'device', 'synthetic'}:
		logger.warning("Unsupported CAMERA_SOURCE '%s', falling back to 'device'", CAMERA_SOURCE)
		CAMERA_SOURCE = 'device'

	CAMERA_DEVICE: str = os.getenv('CAMERA_DEVICE', '/dev/video0').strip()
	CAMERA_FORMAT: str | None = os.getenv('CAMERA_FORMAT', 'v4l2').strip() or None
	CAMERA_VIDEO_SIZE: str = os.getenv('CAMERA_VIDEO_SIZE', '640x480').strip()

	_CAMERA_FRAMERATE, _ = _parse_int('CAMERA_FRAMERATE', 30)
	CAMERA_FRAMERATE: int = _CAMERA_FRAMERATE

	# The original extension only ever captured video.
	CAMERA_AUDIO: bool = _parse_bool('CAMERA_AUDIO', False)

	# Pause before each ICE restart offer. 0 keeps the immediate retry loop.
	_ICE_RESTART_DELAY, _ = _parse_float('ICE_RESTART_DELAY', 0.0)
	ICE_RESTART_DELAY: float = max(_ICE_RESTART_DELAY, 0.0)

	_PREVIEW_JPEG_QUALITY, _ = _parse_int('PREVIEW_JPEG_QUALITY', 80)
	PREVIEW_JPEG_QUALITY: int = min(max(_PREVIEW_JPEG_QUALITY, 1), 95)

	STUN_URL: str = os.getenv('STUN_URL', 'stun:stun.l.google.com:19302').strip()

	COTURN_HOST: str | None = os.getenv('COTURN_HOST')
	COTURN_PORT: str | None = os.getenv('COTURN_PORT')
	COTURN_USERNAME: str | None = os.getenv('COTURN_USERNAME')
	COTURN_PASSWORD: str | None = os.getenv('COTURN_PASSWORD')

	@classmethod
	def video_size(cls) -> Tuple[int, int]:
		"""Return CAMERA_VIDEO_SIZE as (width, height), defaulting to 640x480."""
		try:
			width, height = (int(part) for part in cls.CAMERA_VIDEO_SIZE.lower().split('x', 1))
		except ValueError:
			logger.warning('Ignoring invalid CAMERA_VIDEO_SIZE: %s', cls.CAMERA_VIDEO_SIZE)
			return 640, 480
		return width, height

	@classmethod
	def ice_servers(cls) -> list[dict]:
		"""Return the ICE server list: STUN, plus TURN when fully configured."""
		servers: list[dict] = []
		if cls.STUN_URL:
			servers.append({'urls': cls.STUN_URL})

		if cls.COTURN_HOST and cls.COTURN_PORT and cls.COTURN_USERNAME and cls.COTURN_PASSWORD:
			servers.append({
				'urls': f'turn:{cls.COTURN_HOST}:{cls.COTURN_PORT}',
				'username': cls.COTURN_USERNAME,
				'credential': cls.COTURN_PASSWORD,
			})
		else:
			logger.debug('TURN server not configured, using STUN only')
		return servers

	@classmethod
	def validate(cls) -> bool:
		"""Ensure the capture source can be used before starting."""
		if cls.CAMERA_SOURCE == 'device' and not cls.CAMERA_DEVICE:
			logger.error('Missing CAMERA_DEVICE. Set it in your environment or use CAMERA_SOURCE=synthetic.')
			return False
		if not cls.PAGE_ORIGIN:
			logger.error('Missing PAGE_ORIGIN. Page messages cannot be verified without it.')
			return False
		return True

	@classmethod
	def log_config(cls) -> None:
		"""Print non-sensitive settings to stdout."""
		print('Configuration:')
		print(f'  Page Origin: {cls.PAGE_ORIGIN}')
		print(f'  Camera Source: {cls.CAMERA_SOURCE}')
		if cls.CAMERA_SOURCE == 'device':
			print(f'  Camera Device: {cls.CAMERA_DEVICE} ({cls.CAMERA_FORMAT or "auto"})')
		print(f'  Video: {cls.CAMERA_VIDEO_SIZE} @ {cls.CAMERA_FRAMERATE} fps, audio {"on" if cls.CAMERA_AUDIO else "off"}')
		print(f'  ICE Restart Delay: {cls.ICE_RESTART_DELAY:.2f}s')
		print(f'  TURN: {"set" if cls.COTURN_HOST and cls.COTURN_PASSWORD else "missing"}')
