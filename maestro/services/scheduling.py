"""
Scheduling Parser - 调度短语解析

从自然语言目标中提取执行时间，并返回剥离调度短语后的目标。

支持的格式：
- "in 10 minutes ..." / "after 2 hours ..."
- "30分钟后..." / "两小时之后..."
- "tomorrow at 9am ..." / "tonight ..." / "today at 18:30 ..."
- "at 3pm ..." / "at noon ..."（当天）
- "明天下午3点..." / "今晚8点半..."

只有未来的时间才会触发延迟执行；过去的时间视为无调度信息。
墙上时间（如 9am）按 utc_offset_minutes 指定的时区解释。
"""
import re
from datetime import datetime, timedelta
from typing import Optional, Tuple

from loguru import logger

from sequencer.models import utcnow

AMOUNT = r"\d+|an?|one|two|three|four|five|six|seven|eight|nine|ten|fifteen|twenty|thirty|[一二三四五六七八九十两兩半]+"


class SchedulingParser:
    """
    调度短语解析器

    Usage:
        parser = SchedulingParser()
        goal, due_at = parser.extract("in 10 minutes check example.com")
    """

    # 时间单位映射（分钟）
    TIME_UNITS = {
        "分钟": 1,
        "分": 1,
        "分鐘": 1,
        "min": 1,
        "mins": 1,
        "minute": 1,
        "minutes": 1,
        "小时": 60,
        "小時": 60,
        "个小时": 60,
        "個小時": 60,
        "hour": 60,
        "hours": 60,
        "hr": 60,
        "hrs": 60,
        "h": 60,
        "天": 1440,
        "day": 1440,
        "days": 1440,
    }

    # 中文数字映射
    CHINESE_NUMBERS = {
        "一": 1, "二": 2, "三": 3, "四": 4, "五": 5,
        "六": 6, "七": 7, "八": 8, "九": 9, "十": 10,
        "半": 0.5, "两": 2, "兩": 2
    }

    ENGLISH_NUMBERS = {
        "a": 1, "an": 1, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
        "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
        "fifteen": 15, "twenty": 20, "thirty": 30,
    }

    RELATIVE_EN = re.compile(
        rf"\b(?:in|after)\s+({AMOUNT})\s*(minutes?|mins?|hours?|hrs?|h|days?)\b",
        re.IGNORECASE,
    )
    RELATIVE_ZH = re.compile(
        rf"({AMOUNT})\s*(个小时|個小時|分钟|分鐘|小时|小時|分|天)[之以]?后"
    )
    DAY_EN = re.compile(
        r"\b(tomorrow|today|tonight)\b(?:\s+at\s+(noon|midnight|(\d{1,2})(?::(\d{2}))?\s*(am|pm)?))?",
        re.IGNORECASE,
    )
    AT_EN = re.compile(
        r"\bat\s+(noon|midnight|(\d{1,2}):(\d{2})\s*(am|pm)?|(\d{1,2})\s*(am|pm))\b",
        re.IGNORECASE,
    )
    DAY_ZH = re.compile(
        r"(明天|今天|今晚)(上午|早上|中午|下午|晚上)?"
        r"(?:(\d{1,2}|[一二三四五六七八九十两兩]+)[点點](?:(\d{1,2})分|(半))?)?"
    )

    DEFAULT_HOUR = {"tomorrow": 9, "today": None, "tonight": 20, "明天": 9, "今天": None, "今晚": 20}

    def __init__(self, utc_offset_minutes: int = 0):
        self.utc_offset = timedelta(minutes=utc_offset_minutes)

    def __call__(self, prompt: str) -> Tuple[str, Optional[datetime]]:
        return self.extract(prompt)

    def extract(self, prompt: str, now: Optional[datetime] = None) -> Tuple[str, Optional[datetime]]:
        """
        提取调度信息

        Args:
            prompt: 原始目标
            now: 当前 UTC 时间（naive）

        Returns:
            (clean_prompt, due_at)：无调度信息或时间不在未来时 due_at 为 None
        """
        if not prompt or not isinstance(prompt, str):
            return prompt, None

        text = prompt.strip()
        now = now or utcnow()

        found = self._find(text, now)
        if found is None:
            return text, None

        due_at, start, end = found
        if due_at <= now:
            return text, None

        clean = self._clean(text[:start] + " " + text[end:])
        if len(clean) < 3:
            clean = text

        logger.debug(f"📅 [Scheduling] '{text[start:end]}' -> {due_at.isoformat()} (goal: {clean})")
        return clean, due_at

    def _find(self, text: str, now: datetime) -> Optional[Tuple[datetime, int, int]]:
        """按出现位置返回第一个可解析的调度短语"""
        candidates = []
        for parse in (self._relative_en, self._relative_zh, self._day_en, self._at_en, self._day_zh):
            result = parse(text, now)
            if result is not None:
                candidates.append(result)
        if not candidates:
            return None
        return min(candidates, key=lambda item: item[1])

    # ------------------------------------------------------------------
    # Individual formats
    # ------------------------------------------------------------------

    def _relative(self, match, now: datetime) -> Optional[Tuple[datetime, int, int]]:
        amount = self._parse_amount(match.group(1))
        unit = match.group(2).lower()
        if amount is None:
            return None
        minutes = amount * self.TIME_UNITS.get(unit, self.TIME_UNITS.get(unit.rstrip("s"), 1))
        return now + timedelta(minutes=minutes), match.start(), match.end()

    def _relative_en(self, text: str, now: datetime):
        match = self.RELATIVE_EN.search(text)
        return self._relative(match, now) if match else None

    def _relative_zh(self, text: str, now: datetime):
        match = self.RELATIVE_ZH.search(text)
        return self._relative(match, now) if match else None

    def _day_en(self, text: str, now: datetime):
        match = self.DAY_EN.search(text)
        if not match:
            return None
        day = match.group(1).lower()
        if match.group(2):
            hour, minute = self._clock_en(match.group(2), match.group(3), match.group(4), match.group(5))
            if day == "tonight" and hour < 12:
                hour += 12
        else:
            hour, minute = self.DEFAULT_HOUR[day], 0
            if hour is None:
                return None
        return self._at_local(now, 1 if day == "tomorrow" else 0, hour, minute), match.start(), match.end()

    def _at_en(self, text: str, now: datetime):
        match = self.AT_EN.search(text)
        if not match:
            return None
        if match.group(2):
            hour, minute = self._clock_en(match.group(1), match.group(2), match.group(3), match.group(4))
        elif match.group(5):
            hour, minute = self._clock_en(match.group(1), match.group(5), None, match.group(6))
        else:
            hour, minute = self._clock_en(match.group(1), None, None, None)
        return self._at_local(now, 0, hour, minute), match.start(), match.end()

    def _day_zh(self, text: str, now: datetime):
        match = self.DAY_ZH.search(text)
        if not match:
            return None
        day, period = match.group(1), match.group(2)
        if match.group(3):
            hour = int(self._parse_amount(match.group(3)) or 0)
            minute = 30 if match.group(5) else int(match.group(4) or 0)
            if (period in ("下午", "晚上") or day == "今晚") and hour < 12:
                hour += 12
        else:
            hour, minute = self.DEFAULT_HOUR[day], 0
            if hour is None:
                return None
        return self._at_local(now, 1 if day == "明天" else 0, hour, minute), match.start(), match.end()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _clock_en(token: str, hour: Optional[str], minute: Optional[str], meridiem: Optional[str]) -> Tuple[int, int]:
        token = token.lower()
        if token == "noon":
            return 12, 0
        if token == "midnight":
            return 0, 0
        h = int(hour) % 24
        m = int(minute or 0) % 60
        if meridiem:
            meridiem = meridiem.lower()
            if meridiem == "pm" and h < 12:
                h += 12
            elif meridiem == "am" and h == 12:
                h = 0
        return h, m

    def _at_local(self, now: datetime, day_offset: int, hour: int, minute: int) -> datetime:
        """本地墙上时间 → UTC"""
        local_now = now + self.utc_offset
        local = (local_now + timedelta(days=day_offset)).replace(
            hour=hour % 24, minute=minute % 60, second=0, microsecond=0
        )
        return local - self.utc_offset

    def _parse_amount(self, amount_str: str) -> Optional[float]:
        """解析数量（支持阿拉伯数字、英文与中文数字）"""
        try:
            return float(amount_str)
        except ValueError:
            pass

        lowered = amount_str.lower()
        if lowered in self.ENGLISH_NUMBERS:
            return self.ENGLISH_NUMBERS[lowered]
        if amount_str in self.CHINESE_NUMBERS:
            return self.CHINESE_NUMBERS[amount_str]

        # 组合中文数字（如"十五"、"二十"）
        if "十" in amount_str:
            tens_str, _, ones_str = amount_str.partition("十")
            tens = self.CHINESE_NUMBERS.get(tens_str, 0) if tens_str else 1
            ones = self.CHINESE_NUMBERS.get(ones_str, 0) if ones_str else 0
            return tens * 10 + ones
        return None

    @staticmethod
    def _clean(text: str) -> str:
        text = re.sub(r"\s+", " ", text).strip()
        text = re.sub(r"\s+([,.;!?，。！？])", r"\1", text)
        return text.strip(" ,;，、").strip()
