# market_pulse/notifier/formatter.py
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from market_pulse.alert.trigger import RankChange, TriggerDecision
from market_pulse.storage.models import BreakthroughEvent, HistoricalHigh, RankingSnapshot

if TYPE_CHECKING:
    from market_pulse.aggregator.high_cache import ProximityEntry
    from market_pulse.alert.push_config import UserPushConfig

TIMEFRAME_NAMES = {
    "1h": "1小时",
    "4h": "4小时",
    "8h": "8小时",
    "24h": "24小时",
    "7d": "7天",
    "all_time": "历史",
}


def _now_text() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%d %H:%M UTC")


def _tf_name(timeframe: str) -> str:
    return TIMEFRAME_NAMES.get(timeframe, timeframe)


def _short(symbol: str) -> str:
    return symbol[:-4] if symbol.endswith("USDT") and len(symbol) > 4 else symbol


def _format_price(value: float) -> str:
    if value >= 1000:
        return f"${value:,.2f}"
    elif value >= 1:
        return f"${value:.4f}"
    else:
        return f"${value:.6f}"


def _format_usd(value: float) -> str:
    if abs(value) >= 1_000_000_000:
        return f"${value / 1_000_000_000:.1f}B"
    elif abs(value) >= 1_000_000:
        return f"${value / 1_000_000:.1f}M"
    elif abs(value) >= 1_000:
        return f"${value / 1_000:.1f}K"
    else:
        return f"${value:,.0f}"


def _ranking_lines(ranking: RankingSnapshot, marks: dict[str, str] | None = None) -> list[str]:
    marks = marks or {}
    lines = []
    for entry in ranking.entries:
        mark = marks.get(entry.symbol, "")
        price = f" {_format_price(entry.value)}" if entry.value is not None else ""
        lines.append(
            f"{entry.rank}. {_short(entry.symbol)} {entry.percent_change:+.2f}%{price}{mark}"
        )
    return lines


def format_gainers(ranking: RankingSnapshot) -> str:
    title = f"📈 {_tf_name(ranking.timeframe)}涨幅榜"
    if ranking.status == "error":
        return f"{title}\n\n⚠️ 暂时无法计算"
    if ranking.status == "empty":
        return f"{title}\n\n数据积累中，暂无排行"
    lines = [title, ""]
    lines.extend(_ranking_lines(ranking))
    lines.append("")
    lines.append(f"平均涨幅: {ranking.average_change:+.2f}% ({ranking.qualifying} 个币种)")
    return "\n".join(lines)


def format_schedule_digest(rankings: dict[str, RankingSnapshot]) -> str:
    sections = [f"📊 <b>定时涨幅播报</b>\n⏰ {_now_text()}"]
    for ranking in rankings.values():
        sections.append("━━━━━━━━━━━━━━━━━━━━\n" + format_gainers(ranking))
    return "\n\n".join(sections)


def format_trigger_alert(ranking: RankingSnapshot, decision: TriggerDecision) -> str:
    marks = {s: " 🆕" for s in decision.new_entries}
    for symbol in decision.movers:
        marks[symbol] = marks.get(symbol, "") + " 🚀"

    lines = [f"🔔 <b>{_tf_name(ranking.timeframe)}涨幅榜异动</b>", ""]
    if decision.new_entries:
        lines.append("新进榜: " + ", ".join(_short(s) for s in decision.new_entries))
    if decision.movers:
        lines.append("涨幅突破阈值: " + ", ".join(_short(s) for s in decision.movers))
    lines.append("")
    lines.extend(_ranking_lines(ranking, marks))
    lines.append("")
    lines.append(f"⏰ {_now_text()}")
    return "\n".join(lines)


def _rank_marks(decision: TriggerDecision) -> dict[str, str]:
    marks = {s: " 🆕" for s in decision.new_entries}
    for change in decision.rank_shifts:
        arrow = "⬆️" if change.change == RankChange.UP else "⬇️"
        marks[change.symbol] = f" {arrow}{change.change_value}"
    return marks


def format_oi_alert(ranking: RankingSnapshot, decision: TriggerDecision) -> str:
    marks = _rank_marks(decision)

    lines = [f"📊 <b>{_tf_name(ranking.timeframe)}持仓量变化榜</b>", ""]
    for entry in ranking.entries:
        value = f" {_format_usd(entry.value)}" if entry.value is not None else ""
        lines.append(
            f"{entry.rank}. {_short(entry.symbol)} OI {entry.percent_change:+.2f}%{value}"
            f"{marks.get(entry.symbol, '')}"
        )
    lines.append("")
    lines.append(f"⏰ {_now_text()}")
    return "\n".join(lines)


def format_funding_alert(ranking: RankingSnapshot, decision: TriggerDecision) -> str:
    marks = _rank_marks(decision)

    lines = ["💸 <b>负资金费率榜异动</b>", ""]
    for entry in ranking.entries:
        lines.append(
            f"{entry.rank}. {_short(entry.symbol)} {entry.percent_change:+.4f}%"
            f"{marks.get(entry.symbol, '')}"
        )
    lines.append("")
    lines.append(f"⏰ {_now_text()}")
    return "\n".join(lines)


def format_breakthrough_alert(event: BreakthroughEvent, threshold: float) -> str:
    return f"""🚀 <b>{_short(event.symbol)} 突破{_tf_name(event.timeframe)}高点</b>

💰 当前价格: {_format_price(event.new_high)}
📈 前高: {_format_price(event.old_high)}
🔥 突破幅度: +{event.break_percent:.2f}% (≥ {threshold:g}%)

⏰ {_now_text()}"""


def format_highs(symbol: str, highs: list[HistoricalHigh], price: float | None) -> str:
    if not highs:
        return f"{_short(symbol)} 暂无高点数据"
    lines = [f"🏔 <b>{_short(symbol)} 各周期高点</b>", ""]
    if price is not None:
        lines.append(f"当前: {_format_price(price)}")
    for high in highs:
        distance = ""
        if price:
            distance = f" (距高点 {(high.high_value - price) / price * 100:+.2f}%)"
        lines.append(f"{_tf_name(high.timeframe)}: {_format_price(high.high_value)}{distance}")
    return "\n".join(lines)


def format_push_configs(configs: list["UserPushConfig"]) -> str:
    if not configs:
        return "暂无推送配置，使用 /subscribe 添加"
    lines = ["📋 推送配置", ""]
    for cfg in configs:
        status = "🟢" if cfg.is_enabled else "⚪️"
        params = cfg.params
        if params.kind == "schedule":
            detail = f"每 {params.interval_minutes} 分钟 {','.join(params.timeframes)}"
        elif params.kind == "trigger":
            detail = f"{params.metric} {','.join(params.timeframes)}"
            if params.conditions.min_price_change > 0:
                detail += f" >{params.conditions.min_price_change:g}%"
        else:
            detail = f"阈值 {','.join(f'{t:g}%' for t in params.thresholds)}"
        lines.append(f"{status} #{cfg.id} {cfg.kind}: {detail}")
    return "\n".join(lines)


def format_status(data: dict[str, Any]) -> str:
    uptime = int(data.get("uptime", 0))
    days, hours, minutes = uptime // 86400, (uptime % 86400) // 3600, (uptime % 3600) // 60
    cache = data.get("cache", {})
    pushes = data.get("pushes", {})
    breakthroughs = data.get("breakthroughs", {})
    enabled = pushes.get("enabled_configs", {})
    by_kind = pushes.get("by_kind", {})

    return f"""🔧 系统状态

运行时间: {days}d {hours}h {minutes}m
高点缓存: {cache.get("cache_size", 0)} 条 / {cache.get("symbol_count", 0)} 币种
突破事件: {breakthroughs.get("total", 0)}

推送总数: {pushes.get("total", 0)}
  定时 {by_kind.get("schedule", 0)} | 触发 {by_kind.get("trigger", 0)} | 突破 {by_kind.get("breakthrough", 0)}
启用配置:
  定时 {enabled.get("schedule", 0)} | 触发 {enabled.get("trigger", 0)} | 突破 {enabled.get("breakthrough", 0)}"""


def format_proximity(timeframe: str, entries: list["ProximityEntry"]) -> str:
    if not entries:
        return f"{_tf_name(timeframe)}高点数据积累中"
    lines = [f"🎯 <b>最接近{_tf_name(timeframe)}高点</b>", ""]
    for i, entry in enumerate(entries, 1):
        lines.append(
            f"{i}. {_short(entry.symbol)} {_format_price(entry.current_price)} "
            f"→ {_format_price(entry.high_price)} (需 +{entry.needed_gain_percent:.2f}%)"
        )
    return "\n".join(lines)
