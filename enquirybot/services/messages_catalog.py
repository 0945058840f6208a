"""Fixed customer-facing texts, keyed by language where a translation exists."""

STUCK_PROMPT_TEXT = {
    "en": (
        "Apologies, I didn't get a response from you! Please complete your enquiry "
        "so we can arrange the best assistance for you. "
    ),
    "ar": "أعتذر، لم أتلقَّ ردًا منك! يُرجى إكمال استفسارك حتى نتمكن من تقديم أفضل مساعدة لك. ",
}
STUCK_PROMPT_BUTTONS = {
    "en": [
        {"id": "stuck_continue", "title": "Continue"},
        {"id": "stuck_end", "title": "End Chat"},
    ],
    "ar": [
        {"id": "stuck_continue", "title": "متابعة"},
        {"id": "stuck_end", "title": "إنهاء المحادثة"},
    ],
}

TIMEOUT_CLOSE_TEXT = {
    "en": (
        "I have not heard from you in a while, so I'll be ending this chat session. "
        "Feel free to reach out again whenever you require further assistance.\nThank you!"
    ),
    "ar": (
        "لم نسمع منك منذ فترة، لذا سنقوم بإنهاء هذه الجلسة. "
        "لا تتردد في التواصل معنا مرة أخرى عندما تحتاج إلى مساعدة. شكراً لك!"
    ),
}

STUCK_END_TEXT = {
    "en": (
        "Thank you for your time. One of our Consultants will contact you shortly "
        "to assist you. Have a great day! 👋"
    ),
    "ar": "شكراً لوقتك. سيتصل بك أحد مستشارينا قريباً لمساعدتك. نتمنى لك يوماً سعيداً! 👋",
}

RESUME_FALLBACK_TEXT = {
    "en": "How can we assist you?",
    "ar": "كيف يمكننا مساعدتك؟",
}

INVALID_EMAIL_TEXT = (
    "Invalid email. Please enter a valid email address (example: name@example.com)"
    "\n\nOr type *skip* to continue without email."
)

# Review request is English only
REVIEW_REQUEST_TEXT = "How would you rate your experience with your Capital Avenue assistant today?"
REVIEW_BUTTON_LABEL = "Rate Experience"
REVIEW_SECTIONS = [
    {
        "title": "Your Experience",
        "rows": [
            {"id": "rate_5", "title": "⭐⭐⭐⭐⭐ Excellent"},
            {"id": "rate_4", "title": "⭐⭐⭐⭐ Good"},
            {"id": "rate_3", "title": "⭐⭐⭐ Average"},
            {"id": "rate_2", "title": "⭐⭐ Poor"},
            {"id": "rate_1", "title": "⭐ Very Poor"},
        ],
    }
]
REVIEW_THANKS_TEXT = "Thank you for your feedback!"

UNSUBSCRIBE_REASONS = [
    "Too many messages",
    "Not relevant",
    "Already purchased",
    "Prefer another channel",
    "Other",
]
UNSUBSCRIBE_SURVEY_TEXT = "We've received your request to unsubscribe. Before you go, could you tell us why?"
UNSUBSCRIBE_LIST_TEXT = "Please select a reason:"
UNSUBSCRIBE_LIST_BUTTON = "Reason"
UNSUBSCRIBE_LIST_SECTION = "Select a reason"
UNSUBSCRIBE_OTHER_PROMPT = "Please type your reason below so we can improve."
UNSUBSCRIBED_TEXT = "You’ve been unsubscribed. Thank you for your feedback."
WELCOME_BACK_TEXT = "Hello and welcome back! How can we help you"

CAMPAIGN_INTERESTED_TEXT = (
    "Your interest has been noted. One of our Sales Consultant will contact you shortly "
    "to assist you, Thank you for your response."
)
CAMPAIGN_INTERESTED_TEXT_AR = (
    "لقد تم تسجيل اهتمامكم. سيتصل بكم أحد مستشاري المبيعات لدينا قريباً لمساعدتكم، شكراً لردكم."
)
CAMPAIGN_NOT_INTERESTED_TEXT = (
    "We respect your choice. If at any point you'd like to revisit, our team will be ready to help you."
)

LEAD_NOTIFICATION_TEMPLATE = "NEW LEAD RECEIVED\n\n{name}\n{phone}\n{campaign}\nWhatsApp"


def localized(texts: dict, language: str | None):
    return texts.get(language or "en", texts["en"])


def unsubscribe_reason_sections() -> list[dict]:
    return [
        {
            "title": UNSUBSCRIBE_LIST_SECTION,
            "rows": [
                {"id": f"reason_{reason.replace(' ', '_').lower()}", "title": reason}
                for reason in UNSUBSCRIBE_REASONS
            ],
        }
    ]
