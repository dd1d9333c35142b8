from django.db import models


def _capitalize_words(value: str) -> str:
    formatted_words = []
    for word in value.split():
        if "-" in word:
            formatted_words.append("-".join(part.capitalize() for part in word.split("-")))
        else:
            formatted_words.append(word.capitalize())
    return " ".join(formatted_words)


class Member(models.Model):
    name = models.CharField(max_length=255)
    email = models.EmailField(unique=True)
    id_number = models.CharField(max_length=50, unique=True)
    phone = models.CharField(max_length=50, blank=True)
    address_line1 = models.CharField(max_length=255, blank=True)
    address_line2 = models.CharField(max_length=255, blank=True)
    city = models.CharField(max_length=100, blank=True)
    state = models.CharField(max_length=100, blank=True)
    postal_code = models.CharField(max_length=20, blank=True)
    country = models.CharField(max_length=100, blank=True)
    # Mirrors whether the member currently holds an ACTIVE membership.
    is_active = models.BooleanField(default=False)  # type: ignore[call-arg]
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name", "id"]
        indexes = [
            models.Index(fields=["is_active", "name"], name="member_active_name_idx"),
        ]

    def save(self, *args, **kwargs):
        # Normalize for consistent display and lookups.
        self.name = _capitalize_words(str(self.name or ""))
        self.email = str(self.email or "").strip().lower()
        self.id_number = str(self.id_number or "").strip().upper()
        super().save(*args, **kwargs)

    def __str__(self) -> str:
        return str(self.name)
