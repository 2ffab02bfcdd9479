"""Pygame audio adapter for letter stimuli and response feedback.

Lives outside the deterministic core: the session only calls the
``AudioPlayer`` port. Letters are spoken through an offline TTS subprocess
when one is installed, otherwise each letter gets its own synthesized tone.
"""

from __future__ import annotations

import logging
import math
import os
import shutil
import subprocess
import sys
import time
from array import array

import pygame

from .config import LETTERS

logger = logging.getLogger(__name__)

DISABLE_TTS_ENV = "NBACK_DISABLE_TTS"


class OfflineTtsSpeaker:
    """Best-effort offline TTS via short-lived subprocesses (say / espeak)."""

    _max_utterance_s = 2.5

    def __init__(self) -> None:
        self._backend: str | None = None
        self._active_proc: subprocess.Popen[bytes] | None = None
        self._active_started_s = 0.0

        if os.environ.get(DISABLE_TTS_ENV, "0") == "1":
            return
        if os.environ.get("SDL_AUDIODRIVER", "").strip().lower() == "dummy":
            # Headless runs stay silent.
            return
        self._backend = self._resolve_backend()

    @property
    def enabled(self) -> bool:
        return self._backend is not None

    def speak(self, text: str) -> bool:
        if self._backend is None:
            return False
        self.stop()
        try:
            if self._backend == "say":
                cmd = [shutil.which("say") or "/usr/bin/say", "-r", "200", text]
            else:
                cmd = ["espeak", "-s", "170", text]
            self._active_proc = subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        except OSError as exc:
            logger.warning("tts backend %s failed, disabling: %s", self._backend, exc)
            self._backend = None
            return False
        self._active_started_s = time.monotonic()
        return True

    def update(self) -> None:
        proc = self._active_proc
        if proc is None:
            return
        if proc.poll() is not None:
            self._active_proc = None
        elif (time.monotonic() - self._active_started_s) > self._max_utterance_s:
            self.stop()

    def stop(self) -> None:
        proc = self._active_proc
        self._active_proc = None
        if proc is None or proc.poll() is not None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=0.5)
        except subprocess.TimeoutExpired:
            proc.kill()

    @staticmethod
    def _resolve_backend() -> str | None:
        if sys.platform == "darwin" and shutil.which("say") is not None:
            return "say"
        if shutil.which("espeak") is not None:
            return "espeak"
        return None


class PygameAudioPlayer:
    """``AudioPlayer`` backed by ``pygame.mixer`` with synthesized PCM tones."""

    _sample_rate = 22050
    _amp = 32767

    _feedback_tones: dict[str, tuple[float, float, float]] = {
        # kind -> (frequency_hz, duration_s, gain)
        "correct": (880.0, 0.09, 0.30),
        "incorrect": (220.0, 0.16, 0.30),
        "tick": (1320.0, 0.03, 0.18),
        "complete": (660.0, 0.30, 0.28),
    }

    def __init__(self, *, speaker: OfflineTtsSpeaker | None = None) -> None:
        self._available = False
        self._volume = 1.0
        self._muted = False
        self._speaker = speaker if speaker is not None else OfflineTtsSpeaker()
        self._letter_sounds: dict[str, pygame.mixer.Sound] = {}
        self._feedback_sounds: dict[str, pygame.mixer.Sound] = {}
        self._stimulus_channel: pygame.mixer.Channel | None = None
        self._feedback_channel: pygame.mixer.Channel | None = None

        try:
            if pygame.mixer.get_init() is None:
                pygame.mixer.init(frequency=self._sample_rate, size=-16, channels=1, buffer=512)
            pygame.mixer.set_num_channels(max(4, int(pygame.mixer.get_num_channels())))
            for idx, letter in enumerate(LETTERS):
                # One semitone apart from A4 so letters stay distinguishable without TTS.
                freq = 440.0 * (2.0 ** (idx / 12.0))
                self._letter_sounds[letter] = self._build_tone_sound(freq, 0.35, gain=0.32)
            for kind, (freq, duration, gain) in self._feedback_tones.items():
                self._feedback_sounds[kind] = self._build_tone_sound(freq, duration, gain=gain)
            self._stimulus_channel = pygame.mixer.Channel(0)
            self._feedback_channel = pygame.mixer.Channel(1)
            self._available = True
        except pygame.error as exc:
            logger.warning("audio unavailable: %s", exc)
            self._available = False

    @property
    def available(self) -> bool:
        return self._available

    def play_letter(self, letter: str) -> None:
        if self._muted:
            return
        if self._speaker.enabled and self._speaker.speak(letter):
            return
        sound = self._letter_sounds.get(letter)
        if sound is not None and self._stimulus_channel is not None:
            self._stimulus_channel.play(sound)

    def play_feedback(self, kind: str) -> None:
        if self._muted:
            return
        sound = self._feedback_sounds.get(kind)
        if sound is None:
            logger.debug("unknown feedback kind %r", kind)
            return
        if self._feedback_channel is not None:
            self._feedback_channel.play(sound)

    def set_volume(self, volume: float) -> None:
        self._volume = max(0.0, min(1.0, float(volume)))
        self._apply_volume()

    def get_volume(self) -> float:
        return self._volume

    def mute(self) -> None:
        self._muted = True
        self.stop()
        self._apply_volume()

    def unmute(self) -> None:
        self._muted = False
        self._apply_volume()

    def is_muted(self) -> bool:
        return self._muted

    def update(self) -> None:
        self._speaker.update()

    def stop(self) -> None:
        self._speaker.stop()
        for channel in (self._stimulus_channel, self._feedback_channel):
            if channel is not None:
                channel.stop()

    def _apply_volume(self) -> None:
        level = 0.0 if self._muted else self._volume
        for channel in (self._stimulus_channel, self._feedback_channel):
            if channel is not None:
                channel.set_volume(level)

    def _build_tone_sound(self, frequency_hz: float, duration_s: float, *, gain: float) -> pygame.mixer.Sound:
        pcm = self._render_tone_pcm(frequency_hz, duration_s, gain=gain)
        return pygame.mixer.Sound(buffer=pcm.tobytes())

    def _render_tone_pcm(self, frequency_hz: float, duration_s: float, *, gain: float) -> array[int]:
        sample_count = max(1, int(self._sample_rate * duration_s))
        fade_n = max(1, int(self._sample_rate * 0.008))
        out = array("h")
        for idx in range(sample_count):
            envelope = 1.0
            if idx < fade_n:
                envelope = idx / float(fade_n)
            tail = sample_count - idx - 1
            if tail < fade_n:
                envelope = min(envelope, tail / float(fade_n))
            phase = (2.0 * math.pi * float(frequency_hz) * idx) / float(self._sample_rate)
            sample = math.sin(phase) * gain * max(0.0, envelope)
            out.append(int(max(-1.0, min(1.0, sample)) * self._amp))
        return out
