import re
from typing import Iterable
from urllib.parse import quote


def whatsapp_link(handle: str, text: str) -> str:
    digits = re.sub(r"\D", "", handle or "")
    return f"https://wa.me/{digits}?text={quote(text, safe='')}"


def interest_message(numbers: Iterable[int], raffle_title: str) -> str:
    nums = sorted(int(n) for n in numbers)
    if len(nums) == 1:
        return f'Hola! Me interesa el número {nums[0]} de la rifa "{raffle_title}"'
    listed = ", ".join(str(n) for n in nums)
    return f'Hola! Me interesan los números {listed} de la rifa "{raffle_title}"'
