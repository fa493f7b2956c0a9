"""Standalone HTML player bundled into every export archive."""

from __future__ import annotations

import html
import json
from string import Template
from typing import Sequence

PLAYER_TEMPLATE = Template("""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>$title</title>
<style>
  body { font-family: system-ui, sans-serif; margin: 2rem auto; max-width: 48rem; color: #222; }
  h1 { font-size: 1.4rem; }
  ol { padding-left: 1.5rem; }
  li { margin: 0 0 1rem; padding: .5rem; border-radius: 6px; }
  li.playing { background: #eef4ff; }
  li p { margin: 0 0 .4rem; }
  audio { width: 100%; }
  button { margin-bottom: 1rem; }
</style>
</head>
<body>
<h1>$title</h1>
<button id="play-all" type="button">Play all</button>
<ol id="clips"></ol>
<script id="clip-data" type="application/json">$data</script>
<script>
(function () {
  var clips = JSON.parse(document.getElementById("clip-data").textContent);
  var list = document.getElementById("clips");
  var players = [];

  clips.forEach(function (clip, index) {
    var item = document.createElement("li");
    var text = document.createElement("p");
    text.textContent = clip.text;
    var audio = document.createElement("audio");
    audio.controls = true;
    audio.preload = "none";
    audio.src = clip.file;
    audio.addEventListener("play", function () {
      players.forEach(function (other, i) {
        if (i !== index) { other.pause(); }
        other.parentNode.classList.toggle("playing", i === index);
      });
    });
    audio.addEventListener("ended", function () {
      item.classList.remove("playing");
      if (playAll && index + 1 < players.length) { players[index + 1].play(); }
    });
    item.appendChild(text);
    item.appendChild(audio);
    list.appendChild(item);
    players.push(audio);
  });

  var playAll = false;
  document.getElementById("play-all").addEventListener("click", function () {
    playAll = true;
    if (players.length) { players[0].currentTime = 0; players[0].play(); }
  });
})();
</script>
</body>
</html>
""")


def script_safe_json(value) -> str:
    """JSON that cannot terminate the surrounding <script> element."""
    return (
        json.dumps(value, ensure_ascii=False)
        .replace("&", "\\u0026")
        .replace("<", "\\u003c")
        .replace(">", "\\u003e")
        .replace("\u2028", "\\u2028")
        .replace("\u2029", "\\u2029")
    )


def render_player(clips: Sequence[tuple[str, str]], title: str = "Transcript clips") -> str:
    data = [{"file": file, "text": text} for file, text in clips]
    return PLAYER_TEMPLATE.substitute(title=html.escape(title), data=script_safe_json(data))
