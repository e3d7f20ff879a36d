# market_pulse/notifier/telegram.py
import logging
import re
from collections.abc import Callable, Coroutine
from typing import Any

from telegram import Bot, BotCommand, Update
from telegram.error import TelegramError
from telegram.ext import Application, CommandHandler, ContextTypes

logger = logging.getLogger(__name__)

WELCOME_MESSAGE = """
🔔 <b>Market Pulse</b> - 合约市场涨幅与突破监控

<b>功能：</b>
• 1h / 4h / 24h 涨幅榜
• 多周期高点突破提醒
• 涨幅榜、持仓量榜与资金费率榜异动推送
• 定时涨幅播报

输入 /help 查看所有命令
"""

HELP_MESSAGE = """
📖 <b>命令列表</b>

<b>📊 市场数据</b>
/gainers [1h|4h|24h] - 涨幅榜
/high [BTC] - 各周期高点（不带币种时列出最接近24h高点的币种）
/status - 查看系统状态

<b>🔔 推送设置</b>
/subscribe schedule 60 1h,4h - 每 60 分钟播报
/subscribe trigger 1h 5 - 涨幅榜异动（可选涨幅阈值 %）
/subscribe oi 1h - 持仓量榜异动
/subscribe funding - 负资金费率榜异动
/subscribe breakthrough 1,3,5 - 突破幅度阈值 %
/pushes - 查看推送配置
/enable 3 | /disable 3 - 启用/停用配置
/delete 3 - 删除配置
"""

BOT_COMMANDS = [
    BotCommand("start", "开始使用"),
    BotCommand("help", "查看帮助"),
    BotCommand("gainers", "涨幅榜"),
    BotCommand("high", "各周期高点"),
    BotCommand("status", "系统状态"),
    BotCommand("subscribe", "添加推送"),
    BotCommand("pushes", "查看推送配置"),
    BotCommand("enable", "启用推送"),
    BotCommand("disable", "停用推送"),
    BotCommand("delete", "删除推送"),
]

SUBSCRIBE_USAGE = "用法: /subscribe schedule|trigger|oi|funding|breakthrough ..."


def _split_list(text: str) -> list[str]:
    return [p for p in text.split(",") if p]


class TelegramNotifier:
    def __init__(self, bot_token: str):
        self.bot_token = bot_token
        self.bot = Bot(token=bot_token)
        self.app: Application | None = None  # type: ignore[type-arg]

        # Callbacks
        self.on_status: Callable[[], Coroutine[Any, Any, str]] | None = None
        self.on_gainers: Callable[[str | None], Coroutine[Any, Any, str]] | None = None
        self.on_high: Callable[[str | None], Coroutine[Any, Any, str]] | None = None
        self.on_pushes: Callable[[str], Coroutine[Any, Any, str]] | None = None
        self.on_subscribe: (
            Callable[[str, str, dict[str, Any]], Coroutine[Any, Any, str]] | None
        ) = None
        self.on_toggle: Callable[[str, int, bool], Coroutine[Any, Any, str]] | None = None
        self.on_delete: Callable[[str, int], Coroutine[Any, Any, str]] | None = None

    async def deliver(
        self, user_id: str, message: str, options: dict[str, Any] | None = None
    ) -> bool:
        """推送到用户会话，失败返回 False 由调用方决定是否重试"""
        try:
            await self.bot.send_message(
                chat_id=user_id,
                text=message,
                parse_mode="HTML",
            )
            return True
        except TelegramError as e:
            kind = (options or {}).get("kind", "message")
            logger.warning(f"Failed to deliver {kind} to {user_id}: {e}")
            return False

    @staticmethod
    def _parse_subscribe_command(text: str) -> tuple[str, dict[str, Any]] | None:
        """
        解析 /subscribe 参数

        schedule <分钟> <周期,...>
        trigger <周期,...> [涨幅阈值]
        oi <周期,...> [名次变动阈值]
        funding [名次变动阈值]
        breakthrough <阈值,...> [周期,...]
        """
        parts = text.split()[1:]
        if not parts:
            return None
        kind, args = parts[0].lower(), parts[1:]
        try:
            if kind == "schedule" and len(args) == 2:
                return "schedule", {
                    "interval_minutes": int(args[0]),
                    "timeframes": _split_list(args[1]),
                }
            if kind == "trigger" and len(args) in (1, 2):
                conditions: dict[str, Any] = {"new_entry": True}
                if len(args) == 2:
                    conditions["min_price_change"] = float(args[1])
                return "trigger", {
                    "timeframes": _split_list(args[0]),
                    "metric": "price",
                    "conditions": conditions,
                }
            if kind == "oi" and len(args) in (1, 2):
                conditions = {"new_entry": True}
                if len(args) == 2:
                    conditions["min_rank_shift"] = int(args[1])
                return "trigger", {
                    "timeframes": _split_list(args[0]),
                    "metric": "open_interest",
                    "conditions": conditions,
                }
            if kind == "funding" and len(args) in (0, 1):
                conditions = {"new_entry": True}
                if args:
                    conditions["min_rank_shift"] = int(args[0])
                return "trigger", {
                    "timeframes": ["8h"],
                    "metric": "funding",
                    "conditions": conditions,
                }
            if kind == "breakthrough" and len(args) in (1, 2):
                params: dict[str, Any] = {
                    "thresholds": [float(t) for t in _split_list(args[0])]
                }
                if len(args) == 2:
                    params["timeframes"] = _split_list(args[1])
                return "breakthrough", params
        except ValueError:
            return None
        return None

    @staticmethod
    def _parse_config_id(text: str) -> int | None:
        match = re.match(r"/(?:enable|disable|delete)\s+#?(\d+)", text)
        if match:
            return int(match.group(1))
        return None

    @staticmethod
    def _user_id(update: Update) -> str | None:
        if update.effective_chat is None:
            return None
        return str(update.effective_chat.id)

    async def _handle_gainers(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not update.message or not update.message.text:
            return

        parts = update.message.text.split()
        timeframe = parts[1].lower() if len(parts) > 1 else None

        if self.on_gainers:
            text = await self.on_gainers(timeframe)
            await update.message.reply_text(text, parse_mode="HTML")
        else:
            await update.message.reply_text("数据积累中...")

    async def _handle_high(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not update.message or not update.message.text:
            return

        parts = update.message.text.split()
        symbol = None
        if len(parts) > 1:
            symbol = parts[1].upper()
            if not symbol.endswith("USDT"):
                symbol += "USDT"
        if self.on_high:
            text = await self.on_high(symbol)
            await update.message.reply_text(text, parse_mode="HTML")

    async def _handle_subscribe(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not update.message or not update.message.text:
            return
        user_id = self._user_id(update)
        if user_id is None:
            return

        result = self._parse_subscribe_command(update.message.text)
        if not result:
            await update.message.reply_text(SUBSCRIBE_USAGE)
            return

        kind, params = result
        if self.on_subscribe:
            text = await self.on_subscribe(user_id, kind, params)
            await update.message.reply_text(text)

    async def _handle_pushes(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not update.message:
            return
        user_id = self._user_id(update)
        if user_id is None:
            return

        if self.on_pushes:
            text = await self.on_pushes(user_id)
            await update.message.reply_text(text)
        else:
            await update.message.reply_text("暂无推送配置")

    async def _toggle(self, update: Update, enabled: bool) -> None:
        if not update.message or not update.message.text:
            return
        user_id = self._user_id(update)
        if user_id is None:
            return

        config_id = self._parse_config_id(update.message.text)
        if config_id is None:
            command = "enable" if enabled else "disable"
            await update.message.reply_text(f"用法: /{command} 配置编号")
            return

        if self.on_toggle:
            text = await self.on_toggle(user_id, config_id, enabled)
            await update.message.reply_text(text)

    async def _handle_enable(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self._toggle(update, True)

    async def _handle_disable(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self._toggle(update, False)

    async def _handle_delete(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not update.message or not update.message.text:
            return
        user_id = self._user_id(update)
        if user_id is None:
            return

        config_id = self._parse_config_id(update.message.text)
        if config_id is None:
            await update.message.reply_text("用法: /delete 配置编号")
            return

        if self.on_delete:
            text = await self.on_delete(user_id, config_id)
            await update.message.reply_text(text)

    async def _handle_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not update.message:
            return

        if self.on_status:
            text = await self.on_status()
            await update.message.reply_text(text)
        else:
            await update.message.reply_text("系统运行中")

    async def _handle_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not update.message:
            return
        await update.message.reply_text(WELCOME_MESSAGE, parse_mode="HTML")

    async def _handle_help(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not update.message:
            return
        await update.message.reply_text(HELP_MESSAGE, parse_mode="HTML")

    def setup_handlers(self, app: Application) -> None:  # type: ignore[type-arg]
        app.add_handler(CommandHandler("start", self._handle_start))
        app.add_handler(CommandHandler("help", self._handle_help))
        app.add_handler(CommandHandler("gainers", self._handle_gainers))
        app.add_handler(CommandHandler("high", self._handle_high))
        app.add_handler(CommandHandler("status", self._handle_status))
        app.add_handler(CommandHandler("subscribe", self._handle_subscribe))
        app.add_handler(CommandHandler("pushes", self._handle_pushes))
        app.add_handler(CommandHandler("enable", self._handle_enable))
        app.add_handler(CommandHandler("disable", self._handle_disable))
        app.add_handler(CommandHandler("delete", self._handle_delete))

    async def start_polling(self) -> None:
        self.app = Application.builder().token(self.bot_token).build()
        self.setup_handlers(self.app)
        await self.app.initialize()
        await self.app.start()

        # 命令菜单
        await self.bot.set_my_commands(BOT_COMMANDS)

        if self.app.updater:
            await self.app.updater.start_polling()

    async def stop_polling(self) -> None:
        if self.app:
            if self.app.updater:
                await self.app.updater.stop()
            await self.app.stop()
            await self.app.shutdown()
