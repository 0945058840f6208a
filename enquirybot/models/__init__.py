from enquirybot.models.bot_flow import BotFlow
from enquirybot.models.bot_node import BotNode
from enquirybot.models.campaign import Campaign
from enquirybot.models.campaign_send import CampaignSend
from enquirybot.models.contact import Contact
from enquirybot.models.contact_list import ContactList
from enquirybot.models.enquiry import Enquiry
from enquirybot.models.log_entry import LogEntry
from enquirybot.models.message import Message
from enquirybot.models.phone_number import PhoneNumber
from enquirybot.models.waba_account import WabaAccount

__all__ = [
    "WabaAccount",
    "PhoneNumber",
    "BotFlow",
    "BotNode",
    "Enquiry",
    "Message",
    "Campaign",
    "CampaignSend",
    "Contact",
    "ContactList",
    "LogEntry",
]
