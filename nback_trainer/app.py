"""Pygame UI shell for the dual n-back trainer.

Screens: main menu -> level menu (unlocked levels only) -> training grid ->
results. Timing, scoring and progression live in the core modules; this
module only forwards key presses and draws snapshots.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import pygame

from .audio import PygameAudioPlayer
from .config import GRID_SIZE, AppSettings, configure_logging
from .domain import TrainingMode
from .profile import profile_summary
from .scoring import performance_level
from .session import NBackSession, SessionState
from .training import FinishOutcome, TrainingService, build_training_service

logger = logging.getLogger(__name__)

WINDOW_SIZE = (960, 540)
TARGET_FPS = 60

_BG = (3, 9, 78)
_PANEL = (8, 18, 104)
_BORDER = (226, 236, 255)
_TEXT = (238, 245, 255)
_MUTED = (186, 200, 224)
_ACTIVE_BG = (244, 248, 255)
_ACTIVE_TEXT = (14, 26, 74)
_CELL_ON = (90, 200, 255)
_CELL_OFF = (9, 20, 106)


class Screen(Protocol):
    def handle_event(self, event: pygame.event.Event) -> None: ...
    def render(self, surface: pygame.Surface) -> None: ...
    def close(self) -> None: ...


@dataclass(frozen=True, slots=True)
class MenuItem:
    label: str
    action: Callable[[], None]


class App:
    def __init__(self, surface: pygame.Surface, font: pygame.font.Font) -> None:
        self._surface = surface
        self._font = font
        self._screens: list[Screen] = []
        self._running = True

    @property
    def running(self) -> bool:
        return self._running

    @property
    def font(self) -> pygame.font.Font:
        return self._font

    @property
    def depth(self) -> int:
        return len(self._screens)

    def push(self, screen: Screen) -> None:
        self._screens.append(screen)

    def pop(self) -> None:
        # The root screen is never popped; it handles quit itself.
        if len(self._screens) > 1:
            self._screens.pop()

    def quit(self) -> None:
        self._running = False

    def close(self) -> None:
        """Let every open screen release its work, top of the stack first."""

        for screen in reversed(self._screens):
            screen.close()

    def handle_event(self, event: pygame.event.Event) -> None:
        if event.type == pygame.QUIT:
            self.quit()
            return
        if not self._screens:
            return
        self._screens[-1].handle_event(event)

    def render(self) -> None:
        if not self._screens:
            return
        self._screens[-1].render(self._surface)


def _draw_frame(surface: pygame.Surface, title: str, font: pygame.font.Font) -> pygame.Rect:
    w, h = surface.get_size()
    surface.fill(_BG)
    margin = max(10, min(26, w // 34))
    frame = pygame.Rect(margin, margin, max(260, w - margin * 2), max(220, h - margin * 2))
    pygame.draw.rect(surface, _PANEL, frame)
    pygame.draw.rect(surface, _BORDER, frame, 2)
    text = font.render(title, True, _TEXT)
    surface.blit(text, text.get_rect(midtop=(frame.centerx, frame.y + 12)))
    return frame


class MenuScreen:
    def __init__(self, app: App, title: str, items: list[MenuItem], *, is_root: bool = False) -> None:
        self._app = app
        self._title = title
        self._items = items
        self._selected = 0
        self._is_root = is_root
        self._title_font = pygame.font.Font(None, 42)
        self._item_font = pygame.font.Font(None, 32)
        self._hint_font = pygame.font.Font(None, 22)

    def handle_event(self, event: pygame.event.Event) -> None:
        if event.type != pygame.KEYDOWN:
            return
        if event.key in (pygame.K_UP, pygame.K_w):
            self._move(-1)
        elif event.key in (pygame.K_DOWN, pygame.K_s):
            self._move(1)
        elif event.key in (pygame.K_RETURN, pygame.K_KP_ENTER, pygame.K_SPACE):
            if self._items:
                self._items[self._selected].action()
        elif event.key in (pygame.K_ESCAPE, pygame.K_BACKSPACE):
            if self._is_root:
                self._app.quit()
            else:
                self._app.pop()

    def _move(self, delta: int) -> None:
        if self._items:
            self._selected = (self._selected + delta) % len(self._items)

    def close(self) -> None:
        return None

    def render(self, surface: pygame.Surface) -> None:
        frame = _draw_frame(surface, self._title, self._title_font)
        row_h = 40
        y = frame.y + 70
        for idx, item in enumerate(self._items):
            row = pygame.Rect(frame.x + 40, y, frame.w - 80, row_h - 6)
            selected = idx == self._selected
            pygame.draw.rect(surface, _ACTIVE_BG if selected else _CELL_OFF, row)
            text = self._item_font.render(item.label, True, _ACTIVE_TEXT if selected else _TEXT)
            surface.blit(text, (row.x + 10, row.y + (row.h - text.get_height()) // 2))
            y += row_h

        foot = self._hint_font.render("Enter: Select  |  Esc: Back", True, _MUTED)
        surface.blit(foot, foot.get_rect(midbottom=(frame.centerx, frame.bottom - 10)))


class TextScreen:
    def __init__(self, app: App, title: str, lines: list[str]) -> None:
        self._app = app
        self._title = title
        self._lines = lines
        self._title_font = pygame.font.Font(None, 42)
        self._body_font = pygame.font.Font(None, 28)

    def handle_event(self, event: pygame.event.Event) -> None:
        if event.type == pygame.KEYDOWN and event.key in (
            pygame.K_ESCAPE,
            pygame.K_BACKSPACE,
            pygame.K_RETURN,
            pygame.K_KP_ENTER,
        ):
            self._app.pop()

    def close(self) -> None:
        return None

    def render(self, surface: pygame.Surface) -> None:
        frame = _draw_frame(surface, self._title, self._title_font)
        y = frame.y + 70
        for line in self._lines + ["", "Press Enter to continue."]:
            surface.blit(self._body_font.render(line, True, _TEXT), (frame.x + 40, y))
            y += 30


def _result_lines(outcome: FinishOutcome) -> list[str]:
    r = outcome.result
    lines = [
        "Completed" if r.completed else f"Stopped after {len(r.trials)} trials",
        f"Accuracy: {r.combined_accuracy:.1f}%",
        f"d': {r.combined_d_prime:.2f} ({performance_level(r.combined_d_prime)})",
    ]
    if r.mode.includes_position:
        lines.append(f"Position: {r.position_stats.accuracy:.1f}%")
    if r.mode.includes_audio:
        lines.append(f"Audio: {r.audio_stats.accuracy:.1f}%")
    lines.append(f"Streak: {outcome.progress.current_streak} day(s)")
    for level_id in outcome.newly_unlocked:
        lines.append(f"Unlocked: {level_id}")
    if outcome.persistence_error is not None:
        lines.append("Warning: result could not be saved.")
    return lines


class TrainingScreen:
    def __init__(self, app: App, *, service: TrainingService, session: NBackSession) -> None:
        self._app = app
        self._service = service
        self._session = session
        self._finished = False
        self._title_font = pygame.font.Font(None, 36)
        self._letter_font = pygame.font.Font(None, 96)
        self._hint_font = pygame.font.Font(None, 24)

    def handle_event(self, event: pygame.event.Event) -> None:
        if event.type != pygame.KEYDOWN:
            return
        if event.key == pygame.K_a:
            self._session.respond_position()
        elif event.key == pygame.K_l:
            self._session.respond_audio()
        elif event.key == pygame.K_p:
            if self._session.state is SessionState.PAUSED:
                self._session.resume()
            else:
                self._session.pause()
        elif event.key == pygame.K_ESCAPE:
            self._session.stop()

    def render(self, surface: pygame.Surface) -> None:
        self._session.update()
        audio = self._service.registry.audio
        if isinstance(audio, PygameAudioPlayer):
            audio.update()
        if self._session.state.is_terminal:
            self._finish()
            return

        snap = self._session.snapshot()
        frame = _draw_frame(surface, snap.title, self._title_font)

        cell = max(40, min(frame.w, frame.h - 140) // (GRID_SIZE + 1))
        grid_w = cell * GRID_SIZE
        gx = frame.centerx - grid_w // 2
        gy = frame.y + 60
        for idx in range(GRID_SIZE * GRID_SIZE):
            r, c = divmod(idx, GRID_SIZE)
            rect = pygame.Rect(gx + c * cell + 3, gy + r * cell + 3, cell - 6, cell - 6)
            lit = snap.position is not None and snap.position == idx
            pygame.draw.rect(surface, _CELL_ON if lit else _CELL_OFF, rect)
            pygame.draw.rect(surface, _BORDER, rect, 1)

        if snap.letter is not None:
            # Letters are spoken; the caption only helps when audio is muted.
            color = _TEXT if snap.mode is TrainingMode.SINGLE_AUDIO else _MUTED
            text = self._letter_font.render(snap.letter, True, color)
            surface.blit(text, text.get_rect(center=(gx + grid_w + cell, gy + grid_w // 2)))

        status = f"Trial {snap.trial_index + 1}/{snap.total_trials}"
        if snap.state is SessionState.PAUSED:
            status += "  (paused, P to resume)"
        surface.blit(self._hint_font.render(status, True, _MUTED), (frame.x + 20, frame.bottom - 60))
        hint = self._hint_font.render(snap.input_hint + "  P=pause", True, _MUTED)
        surface.blit(hint, hint.get_rect(midbottom=(frame.centerx, frame.bottom - 10)))

    def _finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        outcome = self._service.finish_session(self._session)
        if outcome.result.completed:
            self._service.registry.audio.play_feedback("complete")
        # Leave the (now stale) level menu too, results return to the main menu.
        self._app.pop()
        self._app.pop()
        self._app.push(TextScreen(self._app, "Results", _result_lines(outcome)))

    def close(self) -> None:
        # Window closed mid-session: keep the partial result.
        if self._finished:
            return
        self._finished = True
        self._session.stop(reason="closed")
        self._service.finish_session(self._session)


def run(
    *,
    max_frames: int | None = None,
    event_injector: Callable[[int], None] | None = None,
    service: TrainingService | None = None,
) -> int:
    settings = AppSettings.from_env()
    configure_logging(settings.log_level)

    pygame.init()
    pygame.display.set_caption("Dual N-Back Trainer")
    surface = pygame.display.set_mode(WINDOW_SIZE, pygame.RESIZABLE)

    font = pygame.font.Font(None, 36)
    clock = pygame.time.Clock()

    app = App(surface=surface, font=font)
    if service is None:
        service = build_training_service(settings, audio=PygameAudioPlayer())

    def open_level(level_id: str) -> None:
        session = service.start_session(level_id)
        app.push(TrainingScreen(app, service=service, session=session))

    def open_levels() -> None:
        items = [
            MenuItem(f"{level.name}  ({level.description})", lambda lid=level.id: open_level(lid))
            for level in service.unlocked_levels()
        ]
        items.append(MenuItem("Back", app.pop))
        app.push(MenuScreen(app, "Choose Level", items))

    def open_profile() -> None:
        profile = service.build_profile()
        app.push(TextScreen(app, "Profile", profile_summary(profile).splitlines()))

    main_items = [
        MenuItem("Train", open_levels),
        MenuItem("Profile", open_profile),
        MenuItem("Quit", app.quit),
    ]
    app.push(MenuScreen(app, "Dual N-Back", main_items, is_root=True))

    frame = 0
    try:
        while app.running:
            if event_injector is not None:
                event_injector(frame)

            for event in pygame.event.get():
                app.handle_event(event)

            app.render()

            pygame.display.flip()

            frame += 1
            if max_frames is not None and frame >= max_frames:
                break

            clock.tick(TARGET_FPS)
    finally:
        app.close()
        service.registry.audio.stop()
        pygame.quit()

    return 0
