"""Input device selection that refuses virtual, loopback and system-audio routes.

A device whose label contains any of the denylisted keywords is treated as a
route for desktop audio rather than a physical microphone. Capturing from it
would feed the assistant's own voice straight back into the transcript.
"""

from dataclasses import dataclass

from loguru import logger

from ..core.errors import DeviceError, DeviceFailure

SYSTEM_AUDIO_KEYWORDS: tuple[str, ...] = (
    "loopback",
    "stereo mix",
    "system audio",
    "what u hear",
    "wave out",
    "speakers",
    "output",
    "soundflower",
    "blackhole",
    "virtual audio",
    "voicemeeter",
    "vb-audio",
    "system sound",
    "desktop audio",
    "monitor of",
    "virtual device",
    "audio router",
    "virtual audio cable",
)


@dataclass(frozen=True)
class InputDevice:
    """An audio input as reported by the host audio API."""

    index: int
    label: str
    max_input_channels: int = 1
    default_samplerate: float = 16000.0


def is_system_audio_device(label: str) -> bool:
    """Return True if `label` names a virtual, loopback or system-audio device (case-insensitive)."""
    lowered = label.lower()
    return any(keyword in lowered for keyword in SYSTEM_AUDIO_KEYWORDS)


def filter_microphones(devices: list[InputDevice]) -> list[InputDevice]:
    """Keep only devices that look like physical microphones."""
    return [device for device in devices if not is_system_audio_device(device.label)]


def select_input_device(devices: list[InputDevice], preferred: str | None = None) -> InputDevice:
    """
    Pick the microphone to record from.

    Args:
        devices: All input-capable devices, in host order.
        preferred: Optional case-insensitive substring of the label to prefer.

    Returns:
        InputDevice: The preferred microphone if present, else the first acceptable one.

    Raises:
        DeviceError: If there are no input devices, or every device is denylisted.
    """
    if not devices:
        raise DeviceError(DeviceFailure.NO_DEVICE)

    microphones = filter_microphones(devices)
    logger.debug(f"Audio inputs: {[d.label for d in devices]}; microphones: {[d.label for d in microphones]}")
    if not microphones:
        raise DeviceError(
            DeviceFailure.SYSTEM_AUDIO_ONLY,
            f"Only system audio devices available: {[d.label for d in devices]}",
        )

    if preferred:
        for device in microphones:
            if preferred.lower() in device.label.lower():
                return device
        logger.warning(f"Preferred input device '{preferred}' not found, using '{microphones[0].label}'")

    return microphones[0]


def verify_microphone(label: str) -> None:
    """
    Check the label of an opened capture stream.

    Raises:
        DeviceError: If the opened stream turned out to be a system-audio route.
    """
    if is_system_audio_device(label):
        logger.error(f"Detected system audio device: '{label}'")
        raise DeviceError(DeviceFailure.SYSTEM_AUDIO_ONLY, f"Opened device '{label}' is a system audio device")
