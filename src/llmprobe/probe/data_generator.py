"""Synthetic prompt construction for limit probing.

Prompts are sized by characters: ``target_tokens * chars_per_token``. The
default sample pool is Japanese prose, where one character is roughly one
token for common tokenizers, hence the default ratio of 1.0. Whenever the
target is larger than the fixed framing (preamble, needle, question and
separators) the composed text is exactly the target length.
"""

from __future__ import annotations

from dataclasses import dataclass
from itertools import cycle

from llmprobe.probe.types import NeedlePosition

# Opening of Natsume Soseki's "I Am a Cat" (public domain).
SAMPLE_TEXTS: tuple[str, ...] = (
    "吾輩は猫である。",
    "名前はまだ無い。",
    "どこで生れたかとんと見当がつかぬ。",
    "何でも薄暗いじめじめした所でニャーニャー泣いていた事だけは記憶している。",
    "吾輩はここで始めて人間というものを見た。",
    "しかもあとで聞くとそれは書生という人間中で一番獰悪な種族であったそうだ。",
    "この書生というのは時々我々を捕えて煮て食うという話である。",
    "しかしその当時は何という考もなかったから別段恐しいとも思わなかった。",
    "ただ彼の掌に載せられてスーと持ち上げられた時何だかフワフワした感じがあったばかりである。",
    "掌の上で少し落ちついて書生の顔を見たのがいわゆる人間というものの見始であろう。",
    "この時妙なものだと思った感じが今でも残っている。",
    "第一毛をもって装飾されべきはずの顔がつるつるしてまるで薬缶だ。",
    "その後猫にもだいぶ逢ったがこんな片輪には一度も出会わした事がない。",
    "のみならず顔の真中があまりに突起している。",
    "そうしてその穴の中から時々ぷうぷうと煙を吹く。",
)

DEFAULT_PREAMBLE = "以下の内容を記憶してください。"
DEFAULT_NEEDLE = "【重要情報】ラッキーカラーは青色です。"
DEFAULT_NEEDLE_ANSWER = "青色"
DEFAULT_QUESTION = "ラッキーカラーは何色でしたか？"
# Used when the caller supplies a fact without a matching question
GENERIC_QUESTION = "上の文章に含まれていた【重要情報】の内容を答えてください。"

_OUTPUT_INSTRUCTION = (
    "非常に詳細な説明を生成してください。できるだけ長く、詳細な文章で回答してください。"
    "各トピックについて深く掘り下げ、例を挙げ、背後にある原理を説明してください。"
)
_OUTPUT_PADDING = (
    "さらに詳細を追加してください。具体的な例、歴史的背景、技術的な詳細、"
    "応用例、関連する概念、比較分析、将来展望などについても説明してください。"
)

_SEP = "\n\n"


@dataclass(frozen=True)
class GeneratedPrompt:
    """A composed probe prompt and the pieces it was built from."""

    text: str
    preamble: str
    body: str
    needle: str
    question: str
    position: NeedlePosition = NeedlePosition.END

    @property
    def parts(self) -> tuple[str, str, str, str]:
        return (self.preamble, self.body, self.needle, self.question)


class TestDataGenerator:
    """Builds token-calibrated filler prompts, optionally carrying a needle."""

    __test__ = False  # not a pytest class despite the name

    def __init__(
        self,
        chars_per_token: float = 1.0,
        sample_texts: tuple[str, ...] | list[str] = SAMPLE_TEXTS,
    ) -> None:
        if chars_per_token <= 0:
            raise ValueError(f"chars_per_token must be positive, got {chars_per_token}")
        if not sample_texts:
            raise ValueError("sample_texts must not be empty")
        self.chars_per_token = chars_per_token
        self.sample_texts = tuple(sample_texts)

    def target_chars(self, target_tokens: int) -> int:
        return max(0, round(target_tokens * self.chars_per_token))

    def generate(self, target_tokens: int) -> GeneratedPrompt:
        """Filler prompt of ~target_tokens with the default fact at the end."""
        return self.generate_with_needle(target_tokens, NeedlePosition.END)

    def generate_with_needle(
        self,
        target_tokens: int,
        position: NeedlePosition,
        needle: str = DEFAULT_NEEDLE,
        question: str = DEFAULT_QUESTION,
        preamble: str = DEFAULT_PREAMBLE,
    ) -> GeneratedPrompt:
        """Filler prompt with *needle* spliced in at *position* of the body.

        END puts the needle after the body, MIDDLE at half of it and PERCENT80
        at 80% of it; the question always comes last.
        """
        # END has one body segment, the others split it in two
        segments = 1 if position is NeedlePosition.END else 2
        framing = len(preamble) + len(needle) + len(question) + len(_SEP) * (2 + segments)
        body = self._fill(self.target_chars(target_tokens) - framing)

        if position is NeedlePosition.END:
            pieces = [preamble, body, needle, question]
        else:
            ratio = 0.5 if position is NeedlePosition.MIDDLE else 0.8
            split = int(len(body) * ratio)
            pieces = [preamble, body[:split], needle, body[split:], question]

        return GeneratedPrompt(
            text=_SEP.join(pieces),
            preamble=preamble,
            body=body,
            needle=needle,
            question=question,
            position=position,
        )

    def generate_output_prompt(self, target_tokens: int) -> str:
        """A ~target_tokens request that asks for the longest possible answer."""
        target = self.target_chars(target_tokens)
        parts = [_OUTPUT_INSTRUCTION]
        length = len(_OUTPUT_INSTRUCTION)
        while length < target:
            parts.append(_OUTPUT_PADDING)
            length += len(_OUTPUT_PADDING)
        text = "".join(parts)
        # Never cut into the instruction itself
        return text[: max(target, len(_OUTPUT_INSTRUCTION))]

    def _fill(self, n_chars: int) -> str:
        """Exactly *n_chars* characters of repeated sample prose."""
        if n_chars <= 0:
            return ""
        chunks: list[str] = []
        length = 0
        for text in cycle(self.sample_texts):
            chunks.append(text)
            length += len(text)
            if length >= n_chars:
                break
        return "".join(chunks)[:n_chars]
