"""
Email templates for alert and digest notifications.
"""

from datetime import tzinfo
from html import escape
from typing import Any, Optional

from src.database.models import AlertHistory
from .base import EmailMessage

BRAND = "Earnlytics"

KEY_LABELS = {
    "previousRating": "之前评级",
    "newRating": "当前评级",
    "previousPrice": "之前目标价",
    "newPrice": "当前目标价",
    "changePercent": "变化幅度",
    "currentValue": "当前值",
    "percentile": "历史分位",
    "metric": "指标",
    "days": "剩余天数",
    "date": "日期",
    "threshold": "设定阈值",
    "currentPrice": "当前价格",
}

PERIOD_LABELS = {"daily": "今日", "weekly": "本周"}

FOOTER_LINES = (
    f"此邮件由 {BRAND} 自动发送",
    "如不想接收此类通知，请登录后调整通知设置",
)


def format_key(key: str) -> str:
    """Display label for a data key; unknown keys are shown as-is."""
    return KEY_LABELS.get(key, key)


def format_value(value: Any) -> str:
    """
    Display form of a data value.

    Numbers of magnitude 1000 or more get thousands separators (up to three
    decimals, trailing zeros dropped); smaller numbers get two decimals.
    """
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        if abs(value) >= 1000:
            return f"{value:,.3f}".rstrip("0").rstrip(".")
        return f"{value:.2f}"
    return str(value)


def dashboard_url(app_url: str, symbol: Optional[str]) -> str:
    return f"{app_url.rstrip('/')}/analysis/{symbol or ''}"


def render_alert_email(
    alert: AlertHistory,
    to: str,
    app_url: str,
    user_name: Optional[str] = None,
) -> EmailMessage:
    """Render the HTML and plain text variants of a single-alert email."""
    greeting = f"您好，{user_name}" if user_name else "您好"
    subject = f"【{BRAND}】{alert.title}"
    link = dashboard_url(app_url, alert.symbol)
    rows = [(format_key(k), format_value(v)) for k, v in alert.data.items()]

    table = ""
    if rows:
        cells = "".join(
            f"""
          <tr>
            <td>{escape(label)}</td>
            <td>{escape(value)}</td>
          </tr>"""
            for label, value in rows
        )
        table = f'<table class="data-table">{cells}\n      </table>'

    html = f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{escape(alert.title)}</title>
  <style>
    body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px; }}
    .header {{ background: #3b82f6; color: white; padding: 20px; border-radius: 8px 8px 0 0; text-align: center; }}
    .content {{ background: #f9fafb; padding: 30px; border-radius: 0 0 8px 8px; }}
    .alert-box {{ background: white; padding: 20px; border-radius: 8px; margin: 20px 0; border-left: 4px solid #3b82f6; }}
    .button {{ display: inline-block; background: #3b82f6; color: white; padding: 12px 24px; text-decoration: none; border-radius: 6px; margin-top: 20px; }}
    .footer {{ text-align: center; color: #6b7280; font-size: 12px; margin-top: 30px; }}
    .data-table {{ width: 100%; margin: 15px 0; }}
    .data-table td {{ padding: 8px; border-bottom: 1px solid #e5e7eb; }}
    .data-table td:first-child {{ font-weight: 600; width: 40%; }}
  </style>
</head>
<body>
  <div class="header">
    <h1>🎯 投资预警</h1>
  </div>
  <div class="content">
    <p>{escape(greeting)}</p>
    <div class="alert-box">
      <h2>{escape(alert.title)}</h2>
      <p>{escape(alert.message)}</p>
      {table}
    </div>
    <a href="{escape(link)}" class="button">查看详情 →</a>
    <div class="footer">
      <p>{FOOTER_LINES[0]}</p>
      <p>{FOOTER_LINES[1]}</p>
    </div>
  </div>
</body>
</html>"""

    text_lines = [greeting, "", f"【{alert.title}】", "", alert.message, ""]
    text_lines.extend(f"{label}: {value}" for label, value in rows)
    text_lines.extend(["", f"查看详情: {link}", "", "---", *FOOTER_LINES])

    return EmailMessage(to=to, subject=subject, html=html, text="\n".join(text_lines))


def render_digest_email(
    alerts: list[AlertHistory],
    period: str,
    to: str,
    tz: tzinfo,
) -> EmailMessage:
    """Render one digest email summarizing several alerts."""
    period_text = PERIOD_LABELS[period]
    count = len(alerts)
    subject = f"【{BRAND}】{period_text}投资预警汇总 ({count}条)"

    items = "".join(
        f"""
    <div class="alert-item">
      <div class="alert-title">{escape(alert.title)}</div>
      <div>{escape(alert.message)}</div>
      <div class="alert-time">{_local_time(alert, tz)}</div>
    </div>"""
        for alert in alerts
    )

    html = f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>{period_text}预警汇总</title>
  <style>
    body {{ font-family: -apple-system, BlinkMacSystemFont, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px; }}
    .header {{ background: #3b82f6; color: white; padding: 20px; text-align: center; border-radius: 8px 8px 0 0; }}
    .alert-item {{ background: #f9fafb; padding: 15px; margin: 10px 0; border-radius: 8px; border-left: 3px solid #3b82f6; }}
    .alert-title {{ font-weight: 600; margin-bottom: 5px; }}
    .alert-time {{ color: #6b7280; font-size: 12px; }}
    .footer {{ text-align: center; color: #6b7280; font-size: 12px; margin-top: 30px; }}
  </style>
</head>
<body>
  <div class="header">
    <h1>{period_text}投资预警汇总</h1>
    <p>共 {count} 条预警</p>
  </div>
  <div style="padding: 20px;">{items}
  </div>
  <div class="footer">
    <p>登录 {BRAND} 查看更多详情</p>
  </div>
</body>
</html>"""

    entries = "\n\n".join(
        f"- {alert.title}\n  {alert.message}\n  {_local_time(alert, tz)}"
        for alert in alerts
    )
    text = f"{period_text}投资预警汇总\n\n共 {count} 条预警\n\n{entries}"

    return EmailMessage(to=to, subject=subject, html=html, text=text)


def _local_time(alert: AlertHistory, tz: tzinfo) -> str:
    if alert.created_at is None:
        return ""
    return alert.created_at.astimezone(tz).strftime("%Y/%m/%d %H:%M:%S")
