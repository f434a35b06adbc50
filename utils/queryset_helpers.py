from django.db.models import Q


class FilterableQuerysetMixin:
    """
    Mixin to provide common filtering functionality for querysets.
    Reduces code duplication in ViewSets that need query parameter filtering.
    """

    def get_queryset(self):
        """
        Returns filtered queryset based on query parameters.
        Override filter_fields in subclasses to specify which fields to filter.
        """
        qs = super().get_queryset()

        for field in getattr(self, "filter_fields", []):
            value = self.request.query_params.get(field)
            if value:
                qs = qs.filter(**{f"{field}__iexact": value})

        return qs


class PartyQuerysetMixin:
    """
    Restricts a queryset to rows where the requesting user is one of the
    parties. Admins see every row.
    """

    party_fields = ("buyer", "seller")

    def get_queryset(self):
        qs = super().get_queryset()
        user = self.request.user
        if user.is_admin:
            return qs

        condition = Q()
        for field in self.party_fields:
            condition |= Q(**{field: user})
        return qs.filter(condition)
