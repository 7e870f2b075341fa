import hmac
import hashlib
import secrets
import time


def md5_hex(message: str) -> str:
    """计算MD5哈希并返回十六进制字符串"""
    return hashlib.md5(message.encode()).hexdigest()


def sha256_hex(message: str) -> str:
    """计算SHA256哈希并返回十六进制字符串"""
    return hashlib.sha256(message.encode()).hexdigest()


def generate_click_id() -> str:
    """点击ID：clk_ + 32位随机十六进制"""
    return "clk_" + secrets.token_hex(16)


def generate_os_user_key(idfv: str, secret: str) -> str:
    """设备稳定键：md5(idfv + secret)，同一设备多次 checkin 得到同一个值"""
    return md5_hex(f"{idfv}{secret}")


def generate_api_key() -> str:
    """租户 API Key：36进制毫秒时间戳 + 随机串"""
    ts = _base36(int(time.time() * 1000))
    return f"{ts}_{secrets.token_hex(16)}"


def keys_equal(provided: str, expected: str) -> bool:
    """常量时间比较，避免按字节泄露密钥"""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


def _base36(num: int) -> str:
    alphabet = "0123456789abcdefghijklmnopqrstuvwxyz"
    if num == 0:
        return "0"
    out = []
    while num:
        num, rem = divmod(num, 36)
        out.append(alphabet[rem])
    return "".join(reversed(out))
