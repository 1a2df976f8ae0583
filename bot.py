from aiogram import Bot, Dispatcher, types
from aiogram.filters import Command, CommandStart
from aiogram.types import WebAppInfo

from config import settings
from wallet import WalletLedger

bot = Bot(token=settings.BOT_TOKEN)
dp = Dispatcher()


def play_keyboard() -> types.InlineKeyboardMarkup:
    # The button opens the web app with Mines and Crash
    return types.InlineKeyboardMarkup(inline_keyboard=[
        [types.InlineKeyboardButton(
            text="🎮 PLAY MINES & CRASH",
            web_app=WebAppInfo(url=settings.WEBAPP_URL)
        )]
    ])


@dp.message(CommandStart())
async def cmd_start(message: types.Message, ledger: WalletLedger):
    await ledger.open_wallet(message.from_user.id, message.from_user.username)
    await message.answer(
        "🚀 <b>Karibu! Welcome to the casino.</b>\n\n"
        "Deposit with M-Pesa and play Mines or Crash.\n"
        "Tap the button below to open the app.",
        parse_mode="HTML",
        reply_markup=play_keyboard()
    )


@dp.message(Command("balance"))
async def cmd_balance(message: types.Message, ledger: WalletLedger):
    balance = await ledger.get_balance(message.from_user.id)
    await message.answer(
        f"💰 Balance: <b>KES {balance:,.2f}</b>",
        parse_mode="HTML",
        reply_markup=play_keyboard()
    )


async def start_bot(ledger: WalletLedger):
    # handlers receive the ledger as a keyword argument
    dp["ledger"] = ledger
    await bot.delete_webhook(drop_pending_updates=True)
    await dp.start_polling(bot)


async def stop_bot():
    await bot.session.close()
