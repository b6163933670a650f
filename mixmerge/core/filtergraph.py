"""Typed filter-graph description and its ffmpeg serializer.

WHY: A merge is "concatenate these inputs in order", optionally with a
silence-stripping pass on each input first. Building that as ad-hoc
string concatenation mixes what the graph means with how ffmpeg spells
it, and makes it hard to test without spawning the engine. Splitting the
two lets tests check the structure and the exact rendering separately.

HOW: build_filter_graph() returns one of two frozen dataclasses:
  PlainConcat        — every input's first audio stream straight into concat
  SilenceStripConcat — silenceremove on each input, then concat of the results
render_filter_graph() turns either into the -filter_complex expression.
build_engine_spec() bundles the ordered inputs, the expression, and the
output mapping; EngineSpec.to_args() produces the full argument vector.

RULES:
- Pure: no I/O, no clocks, no randomness; identical input → identical output
- Inputs keep caller order; labels are positional ([0:a:0], [1:a:0], ...)
- The concat directive always spans all N labels: concat=n=N:v=0:a=1[out]
- The output label is always [out] and is mapped with a single -map
- Codec and bitrate are fixed policy from config (libmp3lame, 192k)
- At least one input is required; the minimum for a *job* is enforced
  by the job manager, not here
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, Tuple, Union

from mixmerge.config import (
    OUTPUT_BITRATE,
    OUTPUT_CODEC,
    SILENCE_STOP_DURATION_S,
    SILENCE_STOP_THRESHOLD,
)
from mixmerge.errors import ValidationError

OUTPUT_LABEL = "out"


@dataclass(frozen=True)
class PlainConcat:
    """Concatenate inputs in order with no per-input processing."""

    inputs: Tuple[str, ...]


@dataclass(frozen=True)
class SilenceStripConcat:
    """Strip long silences from each input, then concatenate the results.

    RULES:
    - stop_periods=-1 removes every qualifying silence run, not just the first
    - stop_duration: minimum silence length in seconds that gets removed
    - stop_threshold: loudness below which audio counts as silence
    """

    inputs: Tuple[str, ...]
    stop_duration_s: int = SILENCE_STOP_DURATION_S
    stop_threshold: str = SILENCE_STOP_THRESHOLD


FilterGraph = Union[PlainConcat, SilenceStripConcat]


@dataclass(frozen=True)
class EngineSpec:
    """Everything the engine needs besides the output path.

    RULES:
    - inputs: ordered input paths, one -i each
    - filter_expression: the single -filter_complex argument
    - output_map: the stream label passed to -map
    """

    inputs: Tuple[str, ...]
    filter_expression: str
    output_map: str

    def to_args(
        self,
        output_path: Union[str, Path],
        ffmpeg_path: str = "ffmpeg",
        codec: str = OUTPUT_CODEC,
        bitrate: str = OUTPUT_BITRATE,
    ) -> List[str]:
        """Build the full ffmpeg argument vector.

        HOW: Banner and periodic stats are suppressed so stderr carries only
        diagnostics; machine-readable progress goes to stdout via
        ``-progress pipe:1``.
        """
        args = [ffmpeg_path, "-hide_banner", "-nostats", "-y"]
        for path in self.inputs:
            args.extend(["-i", path])
        args.extend([
            "-filter_complex", self.filter_expression,
            "-map", self.output_map,
            "-c:a", codec,
            "-b:a", bitrate,
            "-progress", "pipe:1",
            str(output_path),
        ])
        return args


def build_filter_graph(
    inputs: Sequence[Union[str, Path]],
    remove_silence: bool,
) -> FilterGraph:
    """Describe the merge of ``inputs`` as a typed graph.

    RULES:
    - Raises ValidationError for an empty input list
    - Paths are normalised to str so equal inputs compare equal
    """
    if not inputs:
        raise ValidationError("A filter graph needs at least one input")
    normalised = tuple(str(p) for p in inputs)
    if remove_silence:
        return SilenceStripConcat(inputs=normalised)
    return PlainConcat(inputs=normalised)


def _stream_label(index: int) -> str:
    return "[{}:a:0]".format(index)


def _concat(labels: Sequence[str]) -> str:
    return "{}concat=n={}:v=0:a=1[{}]".format(
        "".join(labels), len(labels), OUTPUT_LABEL
    )


def render_filter_graph(graph: FilterGraph) -> str:
    """Serialise a graph into ffmpeg's -filter_complex syntax.

    Examples (two inputs):
        PlainConcat        → ``[0:a:0][1:a:0]concat=n=2:v=0:a=1[out]``
        SilenceStripConcat → ``[0:a:0]silenceremove=...[clean0];``
                             ``[1:a:0]silenceremove=...[clean1];``
                             ``[clean0][clean1]concat=n=2:v=0:a=1[out]``
    """
    if isinstance(graph, SilenceStripConcat):
        count = len(graph.inputs)
        chains = []
        clean_labels = []
        for index in range(count):
            label = "[clean{}]".format(index)
            chains.append(
                "{}silenceremove=stop_periods=-1:stop_duration={}:stop_threshold={}{}".format(
                    _stream_label(index),
                    graph.stop_duration_s,
                    graph.stop_threshold,
                    label,
                )
            )
            clean_labels.append(label)
        chains.append(_concat(clean_labels))
        return ";".join(chains)

    if isinstance(graph, PlainConcat):
        return _concat([_stream_label(i) for i in range(len(graph.inputs))])

    raise TypeError("Unknown filter graph type: {!r}".format(type(graph).__name__))


def build_engine_spec(
    inputs: Sequence[Union[str, Path]],
    remove_silence: bool,
) -> EngineSpec:
    """Build the input list, filter expression, and output mapping in one go."""
    graph = build_filter_graph(inputs, remove_silence)
    return EngineSpec(
        inputs=graph.inputs,
        filter_expression=render_filter_graph(graph),
        output_map="[{}]".format(OUTPUT_LABEL),
    )
