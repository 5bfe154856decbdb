"""Offline player export and the in-app playback sequence."""

import asyncio
import json
import logging
import re
from string import Template

from stryp.models import DEFAULT_SETTINGS

logger = logging.getLogger(__name__)

AUDIO_ERROR_FALLBACK_MS = 3000
PREVIEW_AUDIO_CAP = 30.0  # seconds

_PANEL_FIELDS = ("id", "dialogue", "character_id", "image_url", "video_url", "audio_url")

PLAYER_TEMPLATE = Template("""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>$title - Stryp Comic</title>
    <style>
        body { margin: 0; background: #020617; color: #fff; font-family: sans-serif; display: flex; flex-direction: column; height: 100vh; overflow: hidden; }
        #stage { flex: 1; display: flex; align-items: center; justify-content: center; position: relative; background: #000; overflow: hidden; }
        .media { max-width: 100%; max-height: 100%; object-fit: contain; opacity: 0; transition: opacity 0.5s; display: none; }
        .media.visible { opacity: 1; display: block; }
        #captions { position: absolute; bottom: 0; left: 0; right: 0; background: linear-gradient(to top, rgba(0,0,0,0.9), transparent); padding: 40px 20px 20px; text-align: center; font-size: 20px; min-height: 100px; display: flex; flex-direction: column; align-items: center; justify-content: flex-end; }
        #controls { padding: 15px; background: #0f172a; display: flex; justify-content: center; gap: 15px; }
        button { padding: 10px 24px; font-size: 16px; cursor: pointer; background: #4f46e5; color: white; border: none; border-radius: 8px; font-weight: bold; }
        button:hover { background: #4338ca; }
        #start-screen { position: absolute; inset: 0; background: #020617; z-index: 10; display: flex; flex-direction: column; align-items: center; justify-content: center; }
        h1 { margin-bottom: 20px; text-align: center; color: #e2e8f0; }
        .character-name { color: #22d3ee; font-weight: bold; display: block; font-size: 0.8em; margin-bottom: 4px; }
    </style>
</head>
<body>
    <div id="start-screen">
        <h1 id="start-title">$title</h1>
        <button id="start-btn" onclick="startPlayback()">Start Comic</button>
    </div>
    <div id="stage">
        <img id="current-img" class="media" />
        <video id="current-vid" class="media" muted playsinline></video>
        <div id="captions"></div>
    </div>
    <div id="controls">
        <button onclick="togglePlay()" id="play-btn">Pause</button>
        <button onclick="prevPanel()">Prev</button>
        <button onclick="nextPanel()">Next</button>
    </div>
    <script>
        const panels = $panels;
        const characters = $characters;
        const panelDelay = $panel_delay;
        const audioErrorDelay = $audio_error_delay;
        let currentIndex = 0;
        let isPlaying = false;
        let audio = null;
        let timeout = null;

        function stopTimers() {
            if (audio) { audio.pause(); audio = null; }
            if (timeout) { clearTimeout(timeout); timeout = null; }
        }

        function showEnd() {
            isPlaying = false;
            stopTimers();
            document.getElementById('start-title').textContent = 'The End';
            const btn = document.getElementById('start-btn');
            btn.textContent = 'Replay';
            btn.onclick = startPlayback;
            document.getElementById('start-screen').style.display = 'flex';
        }

        function showPanel(index) {
            if (index >= panels.length) { showEnd(); return; }
            if (index < 0) index = 0;
            currentIndex = index;

            const panel = panels[index];
            const img = document.getElementById('current-img');
            const vid = document.getElementById('current-vid');
            img.classList.remove('visible');
            vid.classList.remove('visible');
            vid.pause();

            setTimeout(() => {
                if (panel.video_url) {
                    vid.src = panel.video_url;
                    vid.oncanplay = () => {
                        vid.classList.add('visible');
                        if (isPlaying) vid.play();
                    };
                } else {
                    img.src = panel.image_url || '';
                    img.onload = () => img.classList.add('visible');
                }
            }, 50);

            const captions = document.getElementById('captions');
            captions.textContent = '';
            const character = characters.find(c => c.id === panel.character_id);
            if (character) {
                const name = document.createElement('span');
                name.className = 'character-name';
                name.textContent = character.name;
                captions.appendChild(name);
            }
            captions.appendChild(document.createTextNode(panel.dialogue || ''));

            stopTimers();
            if (!isPlaying) return;
            if (panel.audio_url) {
                audio = new Audio(panel.audio_url);
                audio.onended = () => nextPanel();
                audio.onerror = () => { timeout = setTimeout(nextPanel, audioErrorDelay); };
                audio.play().catch(() => { timeout = setTimeout(nextPanel, audioErrorDelay); });
            } else {
                timeout = setTimeout(nextPanel, panelDelay);
            }
        }

        function startPlayback() {
            document.getElementById('start-screen').style.display = 'none';
            document.getElementById('play-btn').textContent = 'Pause';
            isPlaying = true;
            showPanel(0);
        }

        function togglePlay() {
            isPlaying = !isPlaying;
            document.getElementById('play-btn').textContent = isPlaying ? 'Pause' : 'Play';
            if (isPlaying) {
                if (audio && audio.paused) audio.play();
                else if (!audio) showPanel(currentIndex);
            } else {
                if (audio) audio.pause();
                if (timeout) { clearTimeout(timeout); timeout = null; }
            }
        }

        function nextPanel() { showPanel(currentIndex + 1); }
        function prevPanel() { showPanel(currentIndex - 1); }
    </script>
</body>
</html>
""")


def safe_title(title: str) -> str:
    return re.sub(r'["<>\\]', "", title or "")


def export_filename(title: str) -> str:
    return re.sub(r"\s+", "_", safe_title(title)).lower() + ".html"


def _script_json(data) -> str:
    # Keep embedded data from closing the script element.
    return json.dumps(data, ensure_ascii=False).replace("</", "<\\/")


def build_offline_player(project: dict, characters: list[dict], settings: dict | None = None) -> str:
    """Render a self-contained HTML player for a project.

    Identical inputs give byte-identical output.
    """
    settings = settings or {}
    panels = [{k: p.get(k) for k in _PANEL_FIELDS} for p in project.get("panels") or []]
    cast = [{"id": c["id"], "name": c.get("name", "")} for c in characters]
    delay = settings.get("panel_delay") or DEFAULT_SETTINGS["panel_delay"]
    return PLAYER_TEMPLATE.substitute(
        title=safe_title(project.get("title", "")),
        panels=_script_json(panels),
        characters=_script_json(cast),
        panel_delay=int(delay),
        audio_error_delay=AUDIO_ERROR_FALLBACK_MS,
    )


class PlaybackSequence:
    """Sequential preview of a project's panels.

    Panels with audio advance when their audio ends (capped at
    PREVIEW_AUDIO_CAP); other panels dwell for panel_delay milliseconds.
    Running past the last panel enters the finished state.
    """

    def __init__(self, panels: list[dict], panel_delay: int = DEFAULT_SETTINGS["panel_delay"]):
        self.panels = list(panels)
        self.panel_delay = panel_delay
        self.index = 0
        self.playing = False
        self.finished = False

    @property
    def current(self) -> dict | None:
        if self.finished or not self.panels:
            return None
        return self.panels[self.index]

    def start(self) -> dict | None:
        self.index = 0
        self.finished = not self.panels
        self.playing = bool(self.panels)
        return self.current

    def advance(self) -> dict | None:
        if self.finished:
            return None
        if self.index + 1 >= len(self.panels):
            self.finished = True
            self.playing = False
            return None
        self.index += 1
        return self.current

    def back(self) -> dict | None:
        if not self.panels:
            return None
        if self.finished:
            self.finished = False
            self.index = len(self.panels) - 1
        else:
            self.index = max(0, self.index - 1)
        return self.current

    def toggle(self) -> bool:
        if not self.finished and self.panels:
            self.playing = not self.playing
        return self.playing

    def stop(self):
        self.playing = False
        self.finished = False
        self.index = 0

    def dwell_for(self, panel: dict) -> int | None:
        """Milliseconds to show a panel, or None when its audio drives the advance."""
        if panel.get("audio_url"):
            return None
        return self.panel_delay

    async def run(self, show, play_audio, sleep=asyncio.sleep):
        """Drive the preview to the end or until stop()/toggle() pauses it.

        show(panel) is awaited for each panel; play_audio(panel) is awaited for
        audio-driven panels and abandoned after PREVIEW_AUDIO_CAP seconds.
        """
        panel = self.start()
        while panel is not None and self.playing:
            await show(panel)
            dwell = self.dwell_for(panel)
            if dwell is None:
                try:
                    await asyncio.wait_for(play_audio(panel), PREVIEW_AUDIO_CAP)
                except asyncio.TimeoutError:
                    logger.info("[player] Audio for panel %s exceeded %ss", panel["id"], PREVIEW_AUDIO_CAP)
                except Exception as e:
                    logger.warning("[player] Audio for panel %s failed: %s", panel["id"], e)
            else:
                await sleep(dwell / 1000)
            if not self.playing:
                break
            panel = self.advance()
        return self.finished
