import urllib.parse
import re
from typing import Any, Dict, Iterable, Tuple

from .utils.security import md5_hex, sha256_hex

_QUOTED = re.compile(r"^\s*(['\"])(.*)\1\s*$")


def _get_path(ctx: Dict[str, Any], path: str) -> Any:
    """从上下文中获取路径值，支持点号分隔的嵌套路径（dict 或对象属性）"""
    if not path:
        return None

    cur: Any = ctx
    for part in path.split("."):
        if part == "":
            continue
        if isinstance(cur, dict):
            if part not in cur:
                return None
            cur = cur[part]
        elif cur is not None and hasattr(cur, part):
            cur = getattr(cur, part)
        else:
            return None
    return cur


def _is_empty(val: Any) -> bool:
    return val is None or (isinstance(val, str) and val.strip() == "")


def _apply_function(val: Any, fn: str, ctx: Dict[str, Any]) -> Any:
    """应用管道内置函数"""
    fn = fn.strip()

    if fn.startswith("coalesce("):
        # coalesce('x') 常量兜底；coalesce(tenant.bundle_id) 路径兜底
        if not _is_empty(val):
            return val
        inner = fn[len("coalesce("):-1]
        quoted = _QUOTED.match(inner)
        if quoted:
            return quoted.group(2)
        return _get_path(ctx, inner.strip())

    if val is None:
        return val

    if fn == "to_upper()":
        return str(val).upper()
    elif fn == "to_lower()":
        return str(val).lower()
    elif fn == "trim()":
        return str(val).strip()
    elif fn == "url_encode()":
        return urllib.parse.quote(str(val), safe="")
    elif fn == "hash_md5()":
        return md5_hex(str(val))
    elif fn == "hash_sha256()":
        return sha256_hex(str(val))
    elif fn.startswith("truncate("):
        try:
            n = int(fn[len("truncate("):-1])
        except ValueError:
            return val
        return str(val)[:n]

    return val


def eval_expr(expr: str, ctx: Dict[str, Any]) -> Any:
    """
    评估映射表达式
    支持的语法：
    - const:value           常量
    - path.to.value         路径访问
    - path | fn() | fn2()   管道：to_upper/to_lower/trim/url_encode/hash_md5/hash_sha256/truncate(n)/coalesce(x)
    """
    expr = expr.strip()

    if expr.startswith("const:"):
        return expr[len("const:"):]

    if "|" in expr:
        parts = [x.strip() for x in expr.split("|")]
        val = eval_expr(parts[0], ctx)
        for fn in parts[1:]:
            val = _apply_function(val, fn, ctx)
        return val

    if "." in expr:
        return _get_path(ctx, expr)

    return expr


def build_query_params(param_map: Iterable[Tuple[str, str]], ctx: Dict[str, Any]) -> Dict[str, str]:
    """按 (参数名, 表达式) 表渲染 query 参数，空值整项省略"""
    out: Dict[str, str] = {}
    for name, expr in param_map:
        try:
            val = eval_expr(expr, ctx)
        except Exception:
            val = None
        if _is_empty(val):
            continue
        out[name] = str(val)
    return out
