from concurrent.futures import Future, ThreadPoolExecutor
import threading
import time

from loguru import logger
import sounddevice as sd  # type: ignore

from ..TTS import SpeechSynthesizerProtocol


class SpeechPlayer:
    """
    Plays the assistant's replies and lets the voice loop silence them.

    Synthesis and playback run on a single worker thread so that `play` returns
    immediately with a future. `mute`, `unmute`, `stop` and `is_speaking` may be
    called from any thread and are idempotent. A reply submitted while muted is
    skipped, matching how a muted volume control would swallow it.
    """

    def __init__(self, synthesizer: SpeechSynthesizerProtocol, pause_time: float = 0.05) -> None:
        self.synthesizer = synthesizer
        self.pause_time = pause_time

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="SpeechPlayer")
        self._lock = threading.Lock()
        self._muted = False
        self._generation = 0  # Bumped by stop() so queued or in-flight replies are dropped
        self._stop_event = threading.Event()
        self._currently_speaking_event = threading.Event()

    @property
    def is_muted(self) -> bool:
        return self._muted

    def mute(self) -> None:
        if not self._muted:
            logger.info("Muting TTS output")
        self._muted = True

    def unmute(self) -> None:
        if self._muted:
            logger.info("Unmuting TTS output")
        self._muted = False

    def is_speaking(self) -> bool:
        return self._currently_speaking_event.is_set()

    def stop(self) -> None:
        """Interrupt current playback and drop anything queued. A no-op when already silent."""
        with self._lock:
            self._generation += 1
            speaking = self._currently_speaking_event.is_set()
            self._stop_event.set()
            self._currently_speaking_event.clear()
        if speaking:
            logger.debug("SpeechPlayer: stopping playback")
            sd.stop()

    def play(self, text: str) -> Future[None]:
        """Queue `text` to be spoken; the future resolves when playback ends or is stopped."""
        if self._muted:
            logger.info(f"TTS is muted, skipping speech: '{text[:50]}'")
            skipped: Future[None] = Future()
            skipped.set_result(None)
            return skipped

        with self._lock:
            generation = self._generation
            self._currently_speaking_event.set()
        return self._executor.submit(self._speak, text, generation)

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _speak(self, text: str, generation: int) -> None:
        try:
            if not self._is_current(generation):
                return
            audio, sample_rate = self.synthesizer.generate_speech_audio(text)
            # A stop() can land while synthesizing; check and start playback under the same lock it takes
            with self._lock:
                if not self._is_current(generation) or self._muted or len(audio) == 0:
                    return
                self._stop_event.clear()
                duration = len(audio) / sample_rate
                start_time = time.monotonic()
                sd.play(audio, sample_rate)
            logger.success(f"TTS text: {text}")

            # Wait for the audio to finish playing or be interrupted
            interrupted = self._stop_event.wait(duration + self.pause_time)
            if interrupted:
                sd.stop()
                percentage_played = 100 * (time.monotonic() - start_time) / duration
                clipped_text = self.clip_interrupted_sentence(text, percentage_played)
                logger.success(f"TTS interrupted at {percentage_played:.0f}%: {clipped_text}")
            else:
                logger.success(f"SpeechPlayer: Playback completed for: '{text}'")
        finally:
            with self._lock:
                if self._is_current(generation):
                    self._currently_speaking_event.clear()

    def shutdown(self) -> None:
        self.stop()
        self._executor.shutdown(wait=False, cancel_futures=True)

    def clip_interrupted_sentence(self, generated_text: str, percentage_played: float) -> str:
        """
        Clips the generated text based on the percentage of audio played before interruption.
        Args:
            generated_text (str): The full text that was being spoken.
            percentage_played (float): The percentage of the audio that was played before interruption.
        Returns:
            str: The clipped text that corresponds to the percentage of audio played.
        """
        tokens = generated_text.split()
        percentage_played = max(0.0, min(100.0, float(percentage_played)))
        words_to_print = round((percentage_played / 100) * len(tokens))
        return " ".join(tokens[:words_to_print])
