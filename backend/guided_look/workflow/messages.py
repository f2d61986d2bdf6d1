"""User-facing copy and generation prompts for the guided look workflow."""

from __future__ import annotations

import re
from typing import Any, Mapping


CATEGORY_LABELS = {"top": "Top", "bottom": "Bottom", "shoes": "Calzado"}

TRYON_SLOT_BY_CATEGORY = {"top": "top_base", "bottom": "bottom", "shoes": "shoes"}

FIELD_QUESTIONS = {
    "occasion": "Perfecto. ¿Para qué ocasión lo querés? (ej: oficina, cita, fiesta, fin de semana)",
    "style": "Genial. ¿Qué estilo buscás? (ej: casual, elegante, formal, streetwear)",
    "category": "¿Qué categoría querés crear? Elegí una: top, bottom o calzado.",
}

FIELD_REPROMPTS = {
    "occasion": "No reconocí la ocasión. Probá con una de estas: oficina, cita, fiesta, viaje, fin de semana.",
    "style": "No reconocí el estilo. Probá con uno de estos: casual, elegante, formal, urbano, streetwear.",
    "category": "Necesito una sola categoría: top, bottom o calzado.",
}

DIRECT_CATEGORY_QUESTION = "Para ir en modo directo necesito solo la categoría: top, bottom o calzado."

COLOR_HEX_BY_KEYWORD: tuple[tuple[str, str], ...] = (
    ("negro", "#111111"),
    ("negra", "#111111"),
    ("blanco", "#F5F5F5"),
    ("blanca", "#F5F5F5"),
    ("gris", "#9CA3AF"),
    ("azul", "#2563EB"),
    ("celeste", "#38BDF8"),
    ("rojo", "#DC2626"),
    ("roja", "#DC2626"),
    ("bordó", "#7F1D1D"),
    ("bordo", "#7F1D1D"),
    ("verde", "#16A34A"),
    ("oliva", "#556B2F"),
    ("amarillo", "#FACC15"),
    ("naranja", "#F97316"),
    ("rosa", "#EC4899"),
    ("fucsia", "#D946EF"),
    ("violeta", "#8B5CF6"),
    ("marrón", "#8B5A2B"),
    ("marron", "#8B5A2B"),
    ("beige", "#D6C7A1"),
    ("crema", "#F3E8C8"),
)
DEFAULT_COLOR_HEX = "#000000"


def category_label(category: str | None) -> str:
    return CATEGORY_LABELS.get(category or "", "-")


def field_question(field: str, *, strategy: str | None = None) -> str:
    if strategy == "direct" and field == "category":
        return DIRECT_CATEGORY_QUESTION
    return FIELD_QUESTIONS[field]


def field_reprompt(field: str) -> str:
    return FIELD_REPROMPTS[field]


def mode_choice_message(cost_credits: int) -> str:
    return "\n".join(
        [
            "Podemos hacerlo de dos formas:",
            f"1) Modo directo: genero rápido con lo mínimo ({cost_credits} créditos al confirmar).",
            f"2) Modo guiado: te hago preguntas paso a paso ({cost_credits} créditos al confirmar).",
            "",
            'Decime "directo" o "guiado".',
        ]
    )


def look_cost_message(collected: Mapping[str, Any], cost_credits: int) -> str:
    return (
        "Tengo todo para generar tu prenda:\n"
        f"- Ocasión: {collected.get('occasion') or 'uso diario'}\n"
        f"- Estilo: {collected.get('style') or 'casual'}\n"
        f"- Categoría: {category_label(collected.get('category'))}\n\n"
        f"Esta generación cuesta {cost_credits} créditos. ¿Confirmás que la genere ahora?"
    )


def edit_cost_message(instruction: str, cost_credits: int) -> str:
    return (
        f'Perfecto. Puedo modificar la prenda aplicando "{instruction}". '
        f"Esta edición cuesta {cost_credits} créditos. ¿Confirmás?"
    )


def tryon_cost_message(cost_credits: int) -> str:
    return f"El probador virtual con selfie cuesta {cost_credits} créditos. ¿Confirmás que lo genere ahora?"


def pending_action_reminder(action: str, cost_credits: int) -> str:
    label = {"generate": "la generación", "edit": "la edición", "tryon": "el probador virtual"}.get(action, "la acción")
    return (
        f"Todavía tengo pendiente {label} ({cost_credits} créditos). "
        'Respondé "sí" para confirmar o "no" para cancelar antes de pedir otra cosa.'
    )


def look_success_message(collected: Mapping[str, Any]) -> str:
    return (
        f"¡Listo! Generé tu prenda ({collected.get('category') or 'top'}) para "
        f"{collected.get('occasion') or 'tu ocasión'} con estilo {collected.get('style') or 'casual'}."
    )


def edit_success_message(instruction: str | None) -> str:
    return f'¡Listo! Apliqué la edición "{instruction or "solicitada"}" a tu prenda.'


TRYON_SUCCESS_MESSAGE = "¡Listo! Generé tu prueba virtual con la selfie."
STILL_PROCESSING_MESSAGE = "Sigo procesando tu pedido. Esperá unos segundos."
INVALID_CONFIRMATION_MESSAGE = "No pude validar la confirmación. Volvé a confirmar el costo para continuar."
CONFIRMATION_EXPECTED_MESSAGE = 'Respondé "sí" para confirmar o "no" para cancelar.'
NEEDS_SELFIE_MESSAGE = "Primero subí una selfie para usar el probador virtual."
INVALID_SELFIE_MESSAGE = "No pude leer la selfie. Subila de nuevo en formato imagen."
NO_GENERATED_ITEM_MESSAGE = "No encontré una prenda generada en esta sesión. Primero generemos una."
EMPTY_EDIT_MESSAGE = 'Contame qué querés cambiar en la prenda. Ejemplo: "cambiar a negro mate".'
ALREADY_SAVED_MESSAGE = "Esta prenda ya estaba guardada en tu armario."
SAVED_MESSAGE = "Listo, guardé la prenda en tu armario."
SAVE_FAILED_MESSAGE = "No pude guardarla, pero podés reintentar en unos segundos."
AUTOSAVE_FAILED_SUFFIX = " No pude guardarla automáticamente, pero podés guardarla manualmente con un click."
SESSION_RESTARTED_MESSAGE = "La sesión anterior expiró. Empecemos de nuevo."


def selfie_loaded_message(cost_credits: int) -> str:
    return f"Selfie cargada. El probador virtual cuesta {cost_credits} créditos cuando confirmes."


def cancelled_message(action: str | None, has_generated_item: bool) -> str:
    if action == "tryon":
        return "Perfecto, cancelé el probador virtual."
    if action == "edit":
        return "Perfecto, cancelé la edición de la prenda."
    if has_generated_item:
        return "Perfecto, cancelé la operación."
    return "Listo, cancelé la creación del look. Cuando quieras lo retomamos."


def autosave_message(enabled: bool) -> str:
    if enabled:
        return "Auto-guardado activado. La próxima prenda generada se guardará automáticamente."
    return "Auto-guardado desactivado. Vas a poder guardar manualmente cada prenda."


def build_look_creation_prompt(collected: Mapping[str, Any]) -> str:
    parts = [
        f"Pedido base: {collected['request_text']}." if collected.get("request_text") else "",
        f"Ocasión: {collected['occasion']}." if collected.get("occasion") else "",
        f"Estilo: {collected['style']}." if collected.get("style") else "",
        f"Categoría: {collected['category']}." if collected.get("category") else "",
        "Foto de producto de moda, fondo limpio, enfoque e-commerce, alta calidad.",
    ]
    return " ".join(part for part in parts if part)


def build_garment_edit_prompt(collected: Mapping[str, Any], instruction: str, base_prompt: str | None = None) -> str:
    trimmed = (instruction or "").strip()
    parts = [
        f"Base de la prenda original: {base_prompt}." if base_prompt else "",
        f"Ocasión objetivo: {collected['occasion']}." if collected.get("occasion") else "",
        f"Estilo objetivo: {collected['style']}." if collected.get("style") else "",
        f"Categoría: {collected['category']}." if collected.get("category") else "",
        f"Cambios solicitados: {trimmed}." if trimmed else "",
        "Reimaginar la misma prenda con esas modificaciones, foto de producto de moda, "
        "fondo limpio tipo e-commerce, alta calidad, sin modelo.",
    ]
    return " ".join(part for part in parts if part)


def primary_color_hex(text: str) -> str:
    for keyword, hex_value in COLOR_HEX_BY_KEYWORD:
        if re.search(rf"\b{re.escape(keyword)}\b", text, re.IGNORECASE):
            return hex_value
    return DEFAULT_COLOR_HEX


def tryon_slot_for(category: str | None) -> str:
    return TRYON_SLOT_BY_CATEGORY.get(category or "", "top_base")
