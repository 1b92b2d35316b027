from django import forms
from .models import Project


class ProjectForm(forms.ModelForm):
    """Validates project payloads from the JSON API."""

    status = forms.ChoiceField(choices=Project.STATUS_CHOICES, required=False)

    class Meta:
        model = Project
        fields = ['title', 'description', 'target_amount', 'image_url', 'category', 'status']
        error_messages = {
            'title': {'required': 'Missing required fields'},
            'description': {'required': 'Missing required fields'},
            'target_amount': {'required': 'Missing required fields'},
            'category': {'required': 'Missing required fields'},
        }

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fields['status'].error_messages['invalid_choice'] = 'Invalid status'

    def clean_target_amount(self):
        amount = self.cleaned_data['target_amount']
        if amount is not None and amount <= 0:
            raise forms.ValidationError('Target amount must be greater than 0')
        return amount

    def clean_status(self):
        # An omitted status resets to active
        return self.cleaned_data.get('status') or Project.STATUS_ACTIVE

    def first_error(self):
        for errors in self.errors.values():
            if errors:
                return errors[0]
        return 'Invalid data'
