"""Entity types exposed through the admin database editor."""

from __future__ import annotations

from datetime import datetime, timezone

from app.model_registry import EntityType, F, ModelRegistry, StorageStrategy


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


VILLAGES = ("Rudania", "Inariko", "Vhintl")
RACES = ("Gerudo", "Goron", "Hylian", "Keaton", "Korok/Kokiri", "Mixed", "Mogma", "Rito", "Sheikah", "Twili", "Zora")
JOBS = (
    "Adventurer", "Artist", "Beekeeper", "Blacksmith", "Cook", "Craftsman", "Entertainer",
    "Farmer", "Fisherman", "Forager", "Fortune Teller", "Graveskeeper", "Guard", "Healer",
    "Herbalist", "Hunter", "Mask Maker", "Merchant", "Mercenary", "Miner", "Priest",
    "Rancher", "Researcher", "Scout", "Shopkeeper", "Stablehand", "Teacher", "Villager",
    "Weaver", "Witch",
)
RELATIONSHIP_TYPES = (
    "LOVERS", "CRUSH", "CLOSE_FRIEND", "FRIEND", "ACQUAINTANCE", "DISLIKE",
    "HATE", "NEUTRAL", "FAMILY", "RIVAL", "ADMIRE", "OTHER",
)

# Attributes populated by downstream character onboarding (sheet sync,
# icon upload), not by the operator creating the record.
CHARACTER_DEFERRED_FIELDS = ("inventory", "appLink", "icon")


def _character_fields(extra: tuple = ()) -> tuple:
    return (
        F("userId", "string", required=True),
        F("name", "string", required=True, min_length=1, max_length=64),
        F("pronouns", "string", required=True),
        F("race", "string", required=True, enum=RACES),
        F("homeVillage", "string", required=True, enum=VILLAGES),
        F("currentVillage", "string", required=True, enum=VILLAGES),
        F("job", "string", required=True, enum=JOBS),
        F("age", "number", minimum=0),
        F("height", "number", minimum=0),
        F("maxHearts", "number", required=True, minimum=0),
        F("currentHearts", "number", required=True, minimum=0),
        F("maxStamina", "number", required=True, minimum=0),
        F("currentStamina", "number", required=True, minimum=0),
        F("inventory", "string", required=True),
        F("appLink", "string", required=True),
        F("icon", "string", required=True),
        F("birthday", "string", default=""),
        F("blighted", "boolean", default=False),
        F("blightStage", "number", default=0, minimum=0, maximum=5),
        F("ko", "boolean", default=False),
        F("gearWeapon", "object"),
        F("gearShield", "object"),
        F("gearArmor", "object"),
        F("spiritOrbs", "number", default=0, minimum=0),
        *extra,
    )


def build_entity_types() -> list[EntityType]:
    return [
        EntityType(
            name="User",
            fields=(
                F("discordId", "string", required=True),
                F("username", "string"),
                F("timezone", "string", default="UTC"),
                F("tokens", "number", default=0, minimum=0),
                F("tokenTracker", "string", default=""),
                F("characterSlot", "number", default=2, minimum=0),
                F("status", "string", default="active", enum=("active", "inactive")),
                F("statusChangedAt", "date", default=_now),
                F("leveling", "object", default=dict),
                F("helpWanted", "any"),
            ),
        ),
        EntityType(
            name="Character",
            fields=_character_fields(
                (
                    F("currentActivePet", "identifier", ref="Pet"),
                    F("currentActiveMount", "identifier", ref="Mount"),
                    F("status", "string", default="accepted", enum=("pending", "accepted", "denied")),
                )
            ),
            create_exempt=CHARACTER_DEFERRED_FIELDS,
        ),
        EntityType(
            name="ModCharacter",
            label="Mod Character",
            fields=_character_fields(
                (
                    F("modTitle", "string", required=True),
                    F("modType", "string", required=True),
                    F("unlimitedHearts", "boolean", default=True),
                    F("unlimitedStamina", "boolean", default=True),
                )
            ),
            create_exempt=CHARACTER_DEFERRED_FIELDS,
        ),
        EntityType(
            name="Item",
            fields=(
                F("itemName", "string", required=True, min_length=1),
                F("image", "string", default="No Image"),
                F("imageType", "string", default="No Image Type"),
                F("emoji", "string", default=""),
                F("itemRarity", "number", default=1, minimum=1, maximum=5),
                F("category", "array", default=list),
                F("type", "array", default=list),
                F("subtype", "array", default=list),
                F("categoryGear", "string", default="None", enum=("None", "Weapon", "Shield", "Armor")),
                F("buyPrice", "number", default=0, minimum=0),
                F("sellPrice", "number", default=0, minimum=0),
                F("stackable", "boolean", default=False),
                F("maxStackSize", "number", default=10, minimum=1),
                F("modifierHearts", "number", default=0),
                F("staminaRecovered", "number", default=0),
                F("craftingMaterial", "array", default=list),
                F("staminaToCraft", "any"),
                F("crafting", "boolean", default=False),
                F("craftingJobs", "array", default=list, enum=JOBS),
                F("gathering", "boolean", default=False),
                F("looting", "boolean", default=False),
                F("vending", "boolean", default=False),
                F("traveling", "boolean", default=False),
                F("exploring", "boolean", default=False),
                F("obtain", "array", default=list),
                F("locations", "array", default=list),
                F("specialWeather", "object", default=dict),
                F("petPerk", "boolean", default=False),
                F("monsterList", "array", default=list),
            ),
        ),
        EntityType(
            name="Monster",
            fields=(
                F("name", "string", required=True),
                F("nameMapping", "string", required=True),
                F("image", "string", default="No Image"),
                F("species", "string", default=""),
                F("type", "string", default=""),
                F("tier", "number", default=1, minimum=1, maximum=10),
                F("hearts", "number", required=True, minimum=0),
                F("dmg", "number", default=0, minimum=0),
                F("bloodmoon", "boolean", default=False),
                F("locations", "array", default=list),
                F("job", "array", default=list, enum=JOBS),
            ),
        ),
        EntityType(
            name="Village",
            fields=(
                F("name", "string", required=True, enum=VILLAGES),
                F("region", "string", required=True),
                F("color", "string", default="#000000"),
                F("emoji", "string", default=""),
                F("health", "number", default=100, minimum=0),
                F("level", "number", default=1, minimum=1, maximum=3),
                F("status", "string", default="upgradable", enum=("upgradable", "maxed", "damaged")),
                F("materials", "object", default=dict),
                F("tokenRequirements", "object", default=dict),
                F("vendingTier", "number", default=1, minimum=1, maximum=3),
                F("lastDamageTime", "date"),
            ),
        ),
        EntityType(
            name="Pet",
            fields=(
                F("name", "string", required=True),
                F("species", "string", required=True),
                F("petType", "string", required=True),
                F("level", "number", default=0, minimum=0, maximum=3),
                F("rollsRemaining", "number", default=0, minimum=0),
                F("owner", "identifier", required=True, ref="Character"),
                F("ownerName", "string"),
                F("discordId", "string"),
                F("status", "string", default="active", enum=("active", "inactive", "retired")),
                F("imageUrl", "string", default=""),
                F("perks", "array", default=list),
                F("lastRollDate", "date"),
            ),
        ),
        EntityType(
            name="Mount",
            fields=(
                F("name", "string", required=True),
                F("species", "string", required=True),
                F("level", "string", required=True, enum=("Basic", "Mid", "High")),
                F("fee", "number", default=0, minimum=0),
                F("stamina", "number", required=True, minimum=0),
                F("currentStamina", "number", minimum=0),
                F("owner", "string"),
                F("characterId", "identifier", ref="Character"),
                F("discordId", "string"),
                F("traits", "array", default=list),
                F("region", "string", enum=VILLAGES),
                F("lastMountTravel", "date"),
            ),
        ),
        EntityType(
            name="Quest",
            fields=(
                F("title", "string", required=True),
                F("description", "string", required=True),
                F("questType", "string", required=True, enum=("Art", "Writing", "Interactive", "RP", "Art / Writing")),
                F("location", "string", required=True),
                F("timeLimit", "string", required=True),
                F("minRequirements", "any", default=0),
                F("tableroll", "string"),
                F("itemReward", "string"),
                F("itemRewardQty", "number", minimum=0),
                F("participantCap", "number", minimum=0),
                F("date", "string", required=True),
                F("questID", "string", required=True),
                F("posted", "boolean", default=False),
                F("postedAt", "date"),
                F("status", "string", default="active", enum=("active", "completed")),
                F("participants", "object", default=dict),
            ),
        ),
        EntityType(
            name="HelpWantedQuest",
            label="Help Wanted Quest",
            fields=(
                F("questId", "string", required=True),
                F("village", "string", required=True, enum=VILLAGES),
                F("date", "string", required=True),
                F("type", "string", required=True, enum=("item", "monster", "escort", "crafting", "art", "writing")),
                F("npcName", "string"),
                F("requirements", "object", required=True),
                F("completed", "boolean", default=False),
                F("completedBy", "object"),
            ),
        ),
        EntityType(
            name="Relationship",
            fields=(
                F("userId", "string", required=True),
                F("characterId", "identifier", required=True, ref="Character"),
                F("targetCharacterId", "identifier", required=True, ref="Character"),
                F("characterName", "string"),
                F("targetCharacterName", "string"),
                F("relationshipTypes", "array", required=True, enum=RELATIONSHIP_TYPES),
                F("notes", "string", default="", max_length=1000),
            ),
        ),
        EntityType(
            name="Party",
            fields=(
                F("leaderId", "identifier", required=True, ref="Character"),
                F("characterIds", "array", default=list, ref="Character"),
                F("region", "string", required=True),
                F("status", "string", default="open", enum=("open", "started", "completed", "cancelled")),
                F("partyId", "string", required=True),
            ),
        ),
        EntityType(
            name="TokenTransaction",
            label="Token Transaction",
            fields=(
                F("userId", "string", required=True),
                F("amount", "number", required=True),
                F("type", "string", required=True, enum=("earned", "spent")),
                F("category", "string", default=""),
                F("description", "string", default=""),
                F("link", "string", default=""),
                F("balanceBefore", "number"),
                F("balanceAfter", "number"),
                F("timestamp", "date", default=_now),
            ),
        ),
        EntityType(
            name="Inventory",
            storage=StorageStrategy.PER_OWNER_SHARD,
            label_fields=("itemName",),
            fields=(
                F("characterId", "identifier", required=True),
                F("itemId", "identifier", ref="Item"),
                F("itemName", "string", required=True, min_length=1),
                F("quantity", "number", required=True, minimum=0),
                F("category", "string", default=""),
                F("type", "string", default=""),
                F("subtype", "any"),
                F("job", "string", default=""),
                F("perk", "string", default=""),
                F("location", "string", default=""),
                F("link", "string", default=""),
                F("date", "date", default=_now),
                F("obtain", "string", default=""),
                F("synced", "string", default=""),
            ),
        ),
    ]


INVENTORY_MODEL = "Inventory"
OWNER_MODELS = ("Character", "ModCharacter")


def build_registry(shard_connected=None) -> ModelRegistry:
    registry = ModelRegistry(shard_connected=shard_connected)
    for entity_type in build_entity_types():
        registry.register(entity_type)
    registry.freeze()
    return registry
