from typing import Any

from app.core.config import SentryConfig

_SENSITIVE_KEYS = {
    "password",
    "access_token",
    "refresh_token",
    "token",
    "jwt",
    "authorization",
    "cookie",
    "set-cookie",
    "apikey",
    "supabase_key",
    "anon_key",
}

# 评审正文与申请答案属于个人信息，不上报
_CONTENT_KEYS = {
    "comments",
    "p_comments",
    "answers",
    "p_answers",
    "applicant_answers",
    "ratings",
    "p_ratings",
    "ratings_json",
}


def _scrub(value: Any) -> Any:
    """
    隐私清洗：递归去除敏感字段与评审/申请正文。

    中文注释:
    - 目标不是“完美还原请求”，而是保证不上传 token 与评审内容。
    """
    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for k, v in value.items():
            key_lower = str(k).strip().lower()
            if key_lower in _SENSITIVE_KEYS or key_lower in _CONTENT_KEYS:
                out[str(k)] = "[Filtered]"
                continue
            out[str(k)] = _scrub(v)
        return out

    if isinstance(value, (list, tuple)):
        return [_scrub(v) for v in value]

    return value


def _before_send(event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any] | None:
    request = event.get("request")
    if isinstance(request, dict):
        headers = request.get("headers")
        if isinstance(headers, dict):
            request["headers"] = {
                k: v for k, v in headers.items() if str(k).strip().lower() not in _SENSITIVE_KEYS
            }
        for key in ("cookies", "data", "body"):
            if key in request:
                request[key] = "[Filtered]"
        event["request"] = request

    for section in ("extra", "contexts"):
        obj = event.get(section)
        if isinstance(obj, dict):
            event[section] = _scrub(obj)

    # 中文注释: realtime 推送与 RPC 参数可能以 breadcrumb data 的形式出现
    crumbs = event.get("breadcrumbs")
    values = crumbs.get("values") if isinstance(crumbs, dict) else None
    if isinstance(values, list):
        for crumb in values:
            if isinstance(crumb, dict) and isinstance(crumb.get("data"), dict):
                crumb["data"] = _scrub(crumb["data"])

    return event


def init_sentry() -> bool:
    """
    初始化 Sentry。

    零崩溃原则：
    - 若未配置 DSN / 显式禁用，则直接返回 False。
    - 任何初始化异常都应在调用方 try/except 处理，不得阻塞启动。
    """
    cfg = SentryConfig.from_env()
    if not cfg.enabled or not cfg.dsn:
        return False

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration

    sentry_sdk.init(
        dsn=cfg.dsn,
        environment=cfg.environment,
        traces_sample_rate=cfg.traces_sample_rate,
        integrations=[FastApiIntegration()],
        send_default_pii=False,
        max_request_body_size="never",
        before_send=_before_send,
    )
    return True
