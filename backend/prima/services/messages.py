"""Outbound WhatsApp message templates (Bahasa Indonesia)."""

from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo

from prima.models import ContextKind

SIGNATURE = "💙 Tim PRIMA"


def verification_prompt(name: str) -> str:
    return (
        "🏥 *PRIMA - Verifikasi WhatsApp*\n\n"
        f"Halo {name}!\n\n"
        "Apakah Anda bersedia menerima pengingat kesehatan dari PRIMA melalui WhatsApp?\n\n"
        "*Balas dengan SALAH SATU kata ini saja:*\n"
        "✅ *YA*\n"
        "❌ *TIDAK*\n\n"
        "⚠️ PENTING: Hanya balas dengan kata *YA* atau *TIDAK* saja (tanpa kata lain)\n\n"
        f"Terima kasih! {SIGNATURE}"
    )


def reminder_message(name: str, message: str) -> str:
    return (
        "⏰ *Pengingat PRIMA*\n\n"
        f"Halo {name}!\n\n"
        f"{message}\n\n"
        "Silakan konfirmasi dengan membalas:\n"
        "✅ *SUDAH* jika sudah selesai\n"
        "⏰ *BELUM* jika belum selesai\n\n"
        f"{SIGNATURE}"
    )


# ---------------------------------------------------------------------------
# Acknowledgements
# ---------------------------------------------------------------------------

def verified_ack(name: str) -> str:
    return f"Terima kasih {name}! ✅\n\nAnda akan menerima pengingat dari relawan PRIMA.\n\n{SIGNATURE}"


def declined_ack(name: str) -> str:
    return f"Baik {name}, terima kasih atas responsnya.\n\nSemoga sehat selalu! 🙏\n\n{SIGNATURE}"


def taken_ack(name: str, confirmed_at: datetime, timezone: str = "Asia/Jakarta") -> str:
    local = confirmed_at.astimezone(ZoneInfo(timezone))
    return (
        f"Terima kasih {name}! ✅\n\n"
        f"Pengingat sudah dikonfirmasi selesai pada {local:%H.%M}\n\n"
        f"{SIGNATURE}"
    )


def missed_ack(name: str) -> str:
    return (
        f"Baik {name}, jangan lupa selesaikan pengingat Anda ya! 📝\n\n"
        "Kami akan mengingatkan lagi nanti.\n\n"
        f"{SIGNATURE}"
    )


def emergency_ack(name: str) -> str:
    return (
        f"🚨 {name}, pesan Anda kami terima.\n\n"
        "Kami mendeteksi ini sebagai situasi darurat. Relawan akan segera menghubungi Anda.\n\n"
        "Jika kondisi memburuk, segera hubungi 119 atau datang ke IGD terdekat.\n\n"
        f"{SIGNATURE}"
    )


def unsubscribe_ack(name: str) -> str:
    return (
        f"Baik {name}, kami akan berhenti mengirimkan pengingat kepada Anda.\n\n"
        "Terima kasih atas kepercayaan Anda selama ini. Semoga sehat selalu! 🙏\n\n"
        f"{SIGNATURE}"
    )


def volunteer_followup(name: str) -> str:
    return (
        f"Terima kasih {name}, pesan Anda sudah kami terima.\n\n"
        "Relawan PRIMA akan segera membalas pesan Anda.\n\n"
        f"{SIGNATURE}"
    )


def general_help(name: str) -> str:
    return (
        f"Halo {name}! 👋\n\n"
        "Pesan Anda sudah kami terima. Jika ada pertanyaan tentang pengingat atau kesehatan, "
        "silakan tulis pertanyaan Anda dan relawan PRIMA akan membantu.\n\n"
        f"{SIGNATURE}"
    )


# ---------------------------------------------------------------------------
# Clarifications (attempt 1, 2, 3+; the third wording repeats indefinitely)
# ---------------------------------------------------------------------------

_CLARIFICATIONS = {
    ContextKind.VERIFICATION: (
        f"⚠️ Mohon balas dengan kata *YA* atau *TIDAK* saja (satu kata, tanpa kata lain)\n\nTerima kasih! {SIGNATURE}",
        "⚠️ PENTING: Balas hanya dengan SALAH SATU kata ini:\n\n"
        "✅ *YA*\n❌ *TIDAK*\n\n"
        f"(Satu kata saja, tanpa tambahan kata lain)\n\n{SIGNATURE}",
        "🔔 MOHON BALAS DENGAN TEPAT:\n\n"
        "✅ Ketik kata *YA* saja - jika setuju\n"
        "❌ Ketik kata *TIDAK* saja - jika tolak\n\n"
        f"⚠️ Hanya satu kata, tanpa kata lain\n\n{SIGNATURE}",
    ),
    ContextKind.REMINDER_CONFIRMATION: (
        f"⚠️ Mohon balas dengan kata *SUDAH* atau *BELUM* saja (satu kata, tanpa kata lain)\n\nTerima kasih! {SIGNATURE}",
        "⚠️ PENTING: Balas hanya dengan SALAH SATU kata ini:\n\n"
        "✅ *SUDAH*\n⏰ *BELUM*\n\n"
        f"(Satu kata saja, tanpa tambahan kata lain)\n\n{SIGNATURE}",
        "🔔 MOHON BALAS DENGAN TEPAT:\n\n"
        "✅ Ketik kata *SUDAH* saja - jika sudah selesai\n"
        "⏰ Ketik kata *BELUM* saja - jika belum selesai\n\n"
        f"⚠️ Hanya satu kata, tanpa kata lain\n\n{SIGNATURE}",
    ),
}


def clarification_level(attempt: int) -> int:
    return 1 if attempt <= 1 else 2 if attempt == 2 else 3


def clarification(kind: ContextKind, attempt: int) -> str:
    """Wording for the *attempt*-th unmatched reply in a *kind* context."""
    wordings = _CLARIFICATIONS.get(kind)
    if wordings is None:
        return f"Mohon maaf, kami belum memahami pesan Anda. Silakan tulis ulang pertanyaan Anda.\n\n{SIGNATURE}"
    return wordings[clarification_level(attempt) - 1]
